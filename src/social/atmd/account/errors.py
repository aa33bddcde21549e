"""Error taxonomy for the account subsystem.

Collaborators (stores and provider adapters) raise the exception types
defined here. The orchestrator never lets them escape: every public operation
wraps the failure in a single `AccountError` and returns it inside a
`Result`.
"""

import asyncio
from enum import Enum
from typing import Optional

import aiohttp


class AccountErrorCode(str, Enum):
    ACCOUNT_CONTEXT_ERROR = "account_context_error"


class ExternalServiceErrorCode(str, Enum):
    REQUEST_FAILED = "request_failed"
    RESPONSE_INVALID = "response_invalid"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION_FAILED = "authentication_failed"
    PROFILE_RETRIEVAL_FAILED = "profile_retrieval_failed"
    SESSION_NOT_FOUND = "session_not_found"


class RepositoryErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    UNIQUE_VIOLATION = "unique_violation"
    DATA_ERROR = "data_error"
    UNKNOWN_ERROR = "unknown_error"


class ExternalServiceError(Exception):
    """
    Raised by provider adapters (Bluesky, GitHub) when a remote call fails.

    `retryable` marks transient failures such as 5xx responses, rate limits
    and dropped connections. Everything else is terminal for the attempt.
    """

    def __init__(
        self,
        service: str,
        code: ExternalServiceErrorCode,
        message: str,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.code = code
        self.message = message
        self.retryable = retryable

    @staticmethod
    def from_status(service: str, status: int, message: str) -> "ExternalServiceError":
        """Classify an unexpected HTTP status from a provider."""
        if status == 429:
            return ExternalServiceError(
                service, ExternalServiceErrorCode.RATE_LIMITED, message, retryable=True
            )
        if status >= 500:
            return ExternalServiceError(
                service,
                ExternalServiceErrorCode.SERVICE_UNAVAILABLE,
                message,
                retryable=True,
            )
        return ExternalServiceError(
            service, ExternalServiceErrorCode.REQUEST_FAILED, message
        )

    def __repr__(self) -> str:
        return (
            f"ExternalServiceError(service={self.service!r}, code={self.code.value!r}, "
            f"message={self.message!r}, retryable={self.retryable!r})"
        )


class RepositoryError(Exception):
    """Raised by stores. `not_found` is the only code the orchestrator branches on."""

    def __init__(self, code: RepositoryErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.code == RepositoryErrorCode.NOT_FOUND

    @staticmethod
    def not_found(entity: str, key: str) -> "RepositoryError":
        return RepositoryError(
            RepositoryErrorCode.NOT_FOUND, f"{entity} not found: {key}"
        )


class StateError(Exception):
    """
    Correlation state failures.

    All of them are terminal: the user has to restart the authorization flow.
    """

    @staticmethod
    def missing() -> "StateError":
        """No state was stored for the request context."""
        return StateError("error-account-state-1000 No state stored for context")

    @staticmethod
    def mismatch() -> "StateError":
        """The state echoed back by the provider differs from the stored one."""
        return StateError("error-account-state-1001 Invalid state")

    @staticmethod
    def expired() -> "StateError":
        """The stored state is older than the configured TTL."""
        return StateError("error-account-state-1002 State has expired")


class GitHubConnectionError(Exception):
    """GitHub connection failures that need the user to re-authorize."""

    @staticmethod
    def unrefreshable() -> "GitHubConnectionError":
        return GitHubConnectionError(
            "error-account-github-1000 No connection found with a refresh token"
        )


class AccountError(Exception):
    """
    The only error type that crosses the orchestrator boundary.

    Attributes:
        operation: Name of the public operation that failed (e.g. "ConnectGitHub")
        code: Always `AccountErrorCode.ACCOUNT_CONTEXT_ERROR` for this context
        message: Human readable summary of the failed operation
        cause: The original collaborator exception
        retryable: Whether retrying the same attempt could succeed
    """

    def __init__(
        self,
        operation: str,
        code: AccountErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.message = message
        self.cause = cause
        self.retryable = is_retryable(cause)

    def __repr__(self) -> str:
        return (
            f"AccountError(operation={self.operation!r}, code={self.code.value!r}, "
            f"message={self.message!r}, cause={self.cause!r}, retryable={self.retryable!r})"
        )


def is_retryable(error: Optional[BaseException]) -> bool:
    if error is None:
        return False
    if isinstance(error, ExternalServiceError):
        return error.retryable
    return isinstance(
        error, (aiohttp.ClientConnectionError, asyncio.TimeoutError, TimeoutError)
    )
