"""User account data models.

Provides SQLAlchemy models for users identified by their AT Protocol DID,
their public profile and the GitHub connection linked to them.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ulid import ULID

from social.atmd.model.base import Base, str512, str2048, timestamptz, ulidpk


class User(Base):
    """AT Protocol identity known to the service.

    The DID is the stable identity; the handle is a display value kept from
    the first sign-in.
    """

    __tablename__ = "users"

    id: Mapped[ulidpk]
    did: Mapped[str512]
    handle: Mapped[str512]
    created_at: Mapped[timestamptz]

    profile: Mapped[Optional["Profile"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="joined",
    )

    __table_args__ = (
        Index("idx_users_did", "did", unique=True),
        Index("idx_users_handle", "handle"),
        Index("idx_users_created_at", "created_at"),
    )


class Profile(Base):
    """Public profile of a user as last reported by the identity provider."""

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    display_name: Mapped[Optional[str]] = mapped_column(String(640), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    banner_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    updated_at: Mapped[timestamptz]

    user: Mapped[User] = relationship(back_populates="profile")


class GitHubConnectionRecord(Base):
    """GitHub user-to-server token pair linked to a user.

    Tokens are stored Fernet encrypted. There is at most one row per user.
    """

    __tablename__ = "github_connections"

    id: Mapped[ulidpk]
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    access_token: Mapped[str2048]
    refresh_token: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[timestamptz]
    updated_at: Mapped[timestamptz]

    __table_args__ = (
        Index("idx_github_connections_user_id", "user_id", unique=True),
    )


def upsert_github_connection_stmt(
    user_id: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[datetime],
    now: datetime,
):
    """Create PostgreSQL upsert statement for a user's GitHub connection.

    Reconnecting replaces the token pair of the existing row and keeps its id.
    """
    return (
        insert(GitHubConnectionRecord)
        .values(
            [
                {
                    "id": str(ULID()),
                    "user_id": user_id,
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "expires_at": expires_at,
                    "created_at": now,
                    "updated_at": now,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_at": expires_at,
                "updated_at": now,
            },
        )
        .returning(GitHubConnectionRecord.id)
    )
