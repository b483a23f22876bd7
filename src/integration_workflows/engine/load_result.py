"""LoadResult for file loading operations.

Used by the document loaders (workflow YAML, env files, vars files, API
catalog) so callers can either inspect a failure or unwrap it into a
ConfigurationError. Stage execution raises exceptions instead.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from .exceptions import ConfigurationError

T = TypeVar("T")


class LoadStatus(str, Enum):
    """Status of a loading operation."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class LoadResult(Generic[T]):  # noqa: UP046
    """
    Result of loading a file.

    Usage:
        result = load_workflow_from_file(path)
        if result.is_success:
            definition = result.value
        else:
            print(f"Load error: {result.error}")
    """

    status: LoadStatus
    value: T | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status == LoadStatus.SUCCESS and self.value is None:
            raise ValueError("Success result must have a value")
        if self.status == LoadStatus.FAILED and not self.error:
            raise ValueError("Failed result must have an error message")

    @property
    def is_success(self) -> bool:
        return self.status == LoadStatus.SUCCESS

    @classmethod
    def success(cls, value: T, metadata: dict[str, Any] | None = None) -> "LoadResult[T]":
        return cls(status=LoadStatus.SUCCESS, value=value, metadata=metadata or {})

    @classmethod
    def failure(cls, error: str, metadata: dict[str, Any] | None = None) -> "LoadResult[T]":
        return cls(status=LoadStatus.FAILED, error=error, metadata=metadata or {})

    def unwrap(self) -> T:
        """Get value or raise ConfigurationError if loading failed."""
        if not self.is_success or self.value is None:
            raise ConfigurationError(self.error or "Load failed")
        return self.value


__all__ = ["LoadResult", "LoadStatus"]
