"""Account domain models.

Plain pydantic models exchanged between the orchestrator, its collaborators
and the transport layer. Persistence mappings live in `social.atmd.model`.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CorrelationState(BaseModel):
    """One-time value binding an authorization request to its callback."""

    state: str
    created_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, ttl: int, now: Optional[datetime] = None) -> bool:
        moment = now or utc_now()
        return (moment - self.created_at).total_seconds() > ttl


class SessionUser(BaseModel):
    id: str
    did: str


class Session(BaseModel):
    user: SessionUser


class UserProfile(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None


class UserAccount(BaseModel):
    id: str
    did: str
    handle: str
    profile: UserProfile = Field(default_factory=UserProfile)


class ProviderProfile(BaseModel):
    """Public profile as reported by the identity provider."""

    handle: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    banner: Optional[str] = None

    def to_user_profile(self) -> UserProfile:
        # Empty strings from the provider are stored as None.
        return UserProfile(
            display_name=self.display_name or None,
            description=self.description or None,
            avatar_url=self.avatar or None,
            banner_url=self.banner or None,
        )


class CallbackResult(BaseModel):
    did: str
    state: str


class GitHubTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class GitHubConnection(BaseModel):
    id: Optional[str] = None
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True only when an expiry is known and strictly in the past."""
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utc_now())


class GitHubInstallation(BaseModel):
    id: int
    account_login: str
    account_type: Optional[str] = None
    target_type: Optional[str] = None
    repository_selection: Optional[str] = None
    html_url: Optional[str] = None
