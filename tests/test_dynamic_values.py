"""Tests for init-stage variable generators."""

from __future__ import annotations

import random
from datetime import datetime

import pytest

from integration_workflows.engine.dynamic_values import (
    DynamicValueService,
    add_months,
    format_number,
)
from integration_workflows.engine.exceptions import ConfigurationError
from integration_workflows.engine.schema import WorkflowVariableDefinition


def variable(**fields) -> WorkflowVariableDefinition:
    return WorkflowVariableDefinition.model_validate({"name": "v", **fields})


@pytest.fixture
def service(fake_clock) -> DynamicValueService:
    return DynamicValueService(fake_clock, random.Random(7))


class TestHelpers:
    def test_add_months_clamps_day(self) -> None:
        assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
        assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)
        assert add_months(datetime(2025, 12, 15), 1) == datetime(2026, 1, 15)

    def test_format_number(self) -> None:
        assert format_number(7, 3) == "007"
        assert format_number(-7, 3) == "-007"
        assert format_number(1234, 2) == "1234"
        assert format_number(5, None) == "5"


class TestDynamicValueService:
    """Tests for each variable type."""

    def test_fixed(self, service) -> None:
        assert service.generate(variable(type="Fixed", value="acme")) == "acme"

    def test_fixed_requires_value(self, service) -> None:
        with pytest.raises(ConfigurationError, match="requires a value"):
            service.generate(variable(type="Fixed", value="  "))

    def test_number_range_and_padding(self, service) -> None:
        definition = variable(type="Number", min=3, max=5, padding=4)
        values = [service.generate(definition) for _ in range(20)]
        assert set(values) <= {"0003", "0004", "0005"}

    def test_number_defaults(self, service) -> None:
        for _ in range(20):
            assert 1 <= int(service.generate(variable(type="Number"))) <= 100

    def test_text(self, service) -> None:
        assert len(service.generate(variable(type="Text"))) == 16
        value = service.generate(variable(type="Text", length=5))
        assert len(value) == 5
        assert value.isalnum()

    def test_guid_and_ulid(self, service) -> None:
        assert len(service.generate(variable(type="Guid"))) == 36
        assert len(service.generate(variable(type="ULID"))) == 26

    def test_sequence(self, service) -> None:
        definition = variable(type="Sequence", start=10, step=5, padding=3)
        assert [service.generate(definition, index) for index in (1, 2, 3)] == [
            "010",
            "015",
            "020",
        ]

    def test_sequence_step_is_at_least_one(self, service) -> None:
        assert service.generate(variable(type="Sequence", step=0), 3) == "3"

    def test_date_in_range(self, service) -> None:
        definition = variable(type="Date", fromDate="2025-01-01", toDate="2025-01-03")
        for _ in range(10):
            assert service.generate(definition) in {"2025-01-01", "2025-01-02", "2025-01-03"}

    def test_date_defaults_around_clock(self, service) -> None:
        value = service.generate(variable(type="Date", format="%Y%m%d"))
        assert "20250214" <= value <= "20250414"

    def test_datetime_single_instant(self, service) -> None:
        definition = variable(
            type="DateTime",
            fromDateTime="2025-05-01T10:00:00+00:00",
            toDateTime="2025-05-01T10:00:00+00:00",
        )
        assert service.generate(definition) == "2025-05-01T10:00:00+00:00"

    def test_datetime_format(self, service) -> None:
        definition = variable(
            type="DateTime",
            fromDateTime="2025-05-01T10:00:00",
            toDateTime="2025-05-01T10:00:00",
            format="%d/%m/%Y %H:%M",
        )
        assert service.generate(definition) == "01/05/2025 10:00"

    def test_time_range(self, service) -> None:
        definition = variable(type="Time", fromTime="08:00:00", toTime="08:00:00")
        assert service.generate(definition) == "08:00:00"

    def test_reversed_bounds_are_swapped(self, service) -> None:
        definition = variable(type="Date", fromDate="2025-01-03", toDate="2025-01-01")
        assert service.generate(definition) in {"2025-01-01", "2025-01-02", "2025-01-03"}
