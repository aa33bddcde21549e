"""
Collaborator interfaces for the account orchestrator.

Each collaborator is an abstract base class so it can be implemented by the
Redis/SQL/HTTP adapters in this repository or replaced by an in-memory fake
in tests. Implementations report failures by raising `ExternalServiceError`
(providers) or `RepositoryError` (stores); "not found" is always
`RepositoryError` with code `not_found`, never `None`.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping

from social.atmd.account.models import (
    CallbackResult,
    CorrelationState,
    GitHubConnection,
    GitHubInstallation,
    GitHubTokens,
    ProviderProfile,
    Session,
    UserAccount,
    UserProfile,
)


class StateStore(ABC):
    """Per-context storage of the pending correlation state."""

    @abstractmethod
    async def get(self, context: str) -> CorrelationState:
        pass

    @abstractmethod
    async def set(self, context: str, state: CorrelationState) -> None:
        """Store `state` for `context`, replacing any previous value."""
        pass


class SessionStore(ABC):
    """Per-context storage of the authenticated principal."""

    @abstractmethod
    async def get(self, context: str) -> Session:
        pass

    @abstractmethod
    async def set(self, context: str, session: Session) -> None:
        pass

    @abstractmethod
    async def remove(self, context: str) -> None:
        """Remove the session. Removing a missing session is not an error."""
        pass


class IdentityProvider(ABC):
    """AT Protocol (Bluesky) identity provider."""

    @abstractmethod
    async def authorize(self, handle: str, state: str) -> str:
        """Return the authorization URL the user should be redirected to."""
        pass

    @abstractmethod
    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        """Exchange the raw callback query parameters for an identity."""
        pass

    @abstractmethod
    async def validate_session(self, did: str) -> str:
        """Confirm the identity is still live and return its DID."""
        pass

    @abstractmethod
    async def get_user_profile(self, did: str) -> ProviderProfile:
        pass

    @abstractmethod
    def client_metadata(self) -> Dict[str, Any]:
        """OAuth client metadata document served to authorization servers."""
        pass


class GitHubTokenProvider(ABC):
    @abstractmethod
    async def get_access_token(self, code: str) -> GitHubTokens:
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> GitHubTokens:
        pass

    @abstractmethod
    async def list_installations(self, access_token: str) -> List[GitHubInstallation]:
        pass


class AccountStore(ABC):
    @abstractmethod
    async def find_by_did(self, did: str) -> UserAccount:
        pass

    @abstractmethod
    async def find_by_id(self, user_id: str) -> UserAccount:
        pass

    @abstractmethod
    async def find_by_handle(self, handle: str) -> UserAccount:
        pass

    @abstractmethod
    async def create(self, did: str, handle: str, profile: UserProfile) -> UserAccount:
        pass

    @abstractmethod
    async def update(self, user_id: str, profile: UserProfile) -> UserAccount:
        """Replace every profile field of the user."""
        pass

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    async def list(self, page: int, limit: int) -> List[UserAccount]:
        """List users ordered by creation, `page` is 1-based."""
        pass


class ConnectionStore(ABC):
    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> GitHubConnection:
        pass

    @abstractmethod
    async def create(self, connection: GitHubConnection) -> GitHubConnection:
        pass

    @abstractmethod
    async def update(self, connection: GitHubConnection) -> GitHubConnection:
        pass

    @abstractmethod
    async def delete_by_user_id(self, user_id: str) -> None:
        pass
