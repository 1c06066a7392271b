from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of dispatch, retry, mode change or AI generation.

    Routers turn ``error_code`` into an HTTP status; job handlers only look
    at ``ok``.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        if not self.ok:
            return default
        return self.value

    def __bool__(self) -> bool:
        return self.ok
