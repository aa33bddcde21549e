from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from social.atmd.account.errors import AccountError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    Outcome of an orchestrator operation.

    Callers branch on `success` instead of catching exceptions:

        result = await orchestrator.validate_session(context)
        if not result.success:
            return unauthorized(result.error)
        session = result.value
    """

    success: bool
    value: Optional[T] = None
    error: Optional[AccountError] = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: AccountError) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the wrapped `AccountError`."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
