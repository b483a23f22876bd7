"""
Init-stage variable generators.

Each WorkflowVariableDefinition produces one string value:

    fixed     value (template-resolved by the caller)
    number    random integer in [min=1, max=100], zero-padded to ``padding``
    text      ``length`` (16) random letters and digits
    guid      uuid4
    ulid      new ULID
    datetime  random instant in [fromDateTime, toDateTime], ISO 8601
    date      random day in [fromDate, toDate], %Y-%m-%d
    time      random time in [fromTime, toTime], %H:%M:%S
    sequence  start + (index - 1) * step

Missing temporal bounds default to one month before/after now (time
defaults to the whole day). ``format`` overrides the rendering with a
strftime pattern.
"""

from __future__ import annotations

import calendar
import random
import string
import uuid
from datetime import date, datetime, time, timedelta

import ulid

from .exceptions import ConfigurationError
from .execution_context import Clock, utc_now
from .schema import VariableType, WorkflowVariableDefinition

DEFAULT_TEXT_LENGTH = 16
DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M:%S"

_TEXT_ALPHABET = string.ascii_letters + string.digits


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def format_number(value: int, padding: int | None) -> str:
    if padding is not None and padding >= 1:
        sign = "-" if value < 0 else ""
        return f"{sign}{abs(value):0{padding}d}"
    return str(value)


class DynamicValueService:
    """Generates values for init-stage variables."""

    def __init__(self, clock: Clock | None = None, rng: random.Random | None = None) -> None:
        self._clock = clock or utc_now
        self._random = rng or random.Random()

    def generate(self, definition: WorkflowVariableDefinition, index: int = 1) -> str:
        """
        Generate a value.

        Args:
            definition: Variable definition
            index: Sequence position (1-based)

        Raises:
            ConfigurationError: ``fixed`` without a value
        """
        match definition.type:
            case VariableType.FIXED:
                if definition.value is None or not definition.value.strip():
                    raise ConfigurationError(
                        f"Fixed variable '{definition.name}' requires a value."
                    )
                return definition.value
            case VariableType.NUMBER:
                low = definition.min if definition.min is not None else 1
                high = definition.max if definition.max is not None else 100
                if high < low:
                    low, high = high, low
                return format_number(self._random.randint(low, high), definition.padding)
            case VariableType.TEXT:
                length = definition.length if definition.length is not None else DEFAULT_TEXT_LENGTH
                return "".join(self._random.choice(_TEXT_ALPHABET) for _ in range(length))
            case VariableType.GUID:
                return str(uuid.uuid4())
            case VariableType.ULID:
                return str(ulid.new())
            case VariableType.DATETIME:
                value = self._random_datetime(definition.from_date_time, definition.to_date_time)
                return value.strftime(definition.format) if definition.format else value.isoformat()
            case VariableType.DATE:
                day = self._random_date(definition.from_date, definition.to_date)
                return day.strftime(definition.format or DATE_FORMAT)
            case VariableType.TIME:
                moment = self._random_time(definition.from_time, definition.to_time)
                return moment.strftime(definition.format or TIME_FORMAT)
            case VariableType.SEQUENCE:
                start = definition.start if definition.start is not None else 1
                step = max(1, definition.step if definition.step is not None else 1)
                return format_number(start + (index - 1) * step, definition.padding)
        raise ConfigurationError(f"Unsupported variable type '{definition.type}'.")

    def _random_datetime(self, start: datetime | None, end: datetime | None) -> datetime:
        now = self._clock()
        if start is None and end is None:
            start, end = add_months(now, -1), add_months(now, 1)
        elif start is None:
            start = add_months(end, -1)
        elif end is None:
            end = add_months(start, 1)
        if end < start:
            start, end = end, start
        span = (end - start).total_seconds()
        return start + timedelta(seconds=self._random.uniform(0, span))

    def _random_date(self, start: date | None, end: date | None) -> date:
        today = datetime.combine(self._clock().date(), time())
        if start is None and end is None:
            start, end = add_months(today, -1).date(), add_months(today, 1).date()
        elif start is None:
            start = add_months(datetime.combine(end, time()), -1).date()
        elif end is None:
            end = add_months(datetime.combine(start, time()), 1).date()
        if end < start:
            start, end = end, start
        return start + timedelta(days=self._random.randint(0, (end - start).days))

    def _random_time(self, start: time | None, end: time | None) -> time:
        start = start or time.min
        end = end or time.max
        if end < start:
            start, end = end, start
        first = datetime.combine(date.min, start)
        span = (datetime.combine(date.min, end) - first).total_seconds()
        return (first + timedelta(seconds=self._random.uniform(0, span))).time()


__all__ = ["DynamicValueService", "add_months", "format_number"]
