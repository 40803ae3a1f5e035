from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an integration call that must not raise into the request path."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_response(response: dict, value_key: str, code: str = "provider_error") -> "Result[T]":
        """Wrap an ``{"ok": bool, ...}`` client response."""
        if response.get("ok"):
            return Result.success(response.get(value_key))
        return Result.failure(str(response.get("error") or "request failed"), code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
