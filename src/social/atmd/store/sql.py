"""PostgreSQL backed account and GitHub connection stores.

Every store method runs in its own transaction. SQLAlchemy failures are
translated into `RepositoryError` so the orchestrator only ever sees the
store error taxonomy.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from social.atmd.account.errors import RepositoryError, RepositoryErrorCode
from social.atmd.account.models import (
    GitHubConnection,
    UserAccount,
    UserProfile,
    utc_now,
)
from social.atmd.account.ports import AccountStore, ConnectionStore
from social.atmd.model.account import (
    GitHubConnectionRecord,
    Profile,
    User,
    upsert_github_connection_stmt,
)

logger = logging.getLogger(__name__)


class SqlStore:
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.database_session_maker = database_session_maker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.database_session_maker() as database_session:
                async with database_session.begin():
                    yield database_session
        except IntegrityError as e:
            raise RepositoryError(RepositoryErrorCode.UNIQUE_VIOLATION, str(e.orig)) from e
        except DataError as e:
            raise RepositoryError(RepositoryErrorCode.DATA_ERROR, str(e.orig)) from e
        except SQLAlchemyError as e:
            raise RepositoryError(RepositoryErrorCode.UNKNOWN_ERROR, str(e)) from e


def to_user_account(user: User) -> UserAccount:
    profile = UserProfile()
    if user.profile is not None:
        profile = UserProfile(
            display_name=user.profile.display_name,
            description=user.profile.description,
            avatar_url=user.profile.avatar_url,
            banner_url=user.profile.banner_url,
        )
    return UserAccount(id=user.id, did=user.did, handle=user.handle, profile=profile)


class SqlAccountStore(SqlStore, AccountStore):
    async def _find_one(self, column, value: str) -> UserAccount:
        async with self._transaction() as database_session:
            user: Optional[User] = (
                await database_session.scalars(select(User).where(column == value))
            ).first()
            if user is None:
                raise RepositoryError.not_found("user", value)
            return to_user_account(user)

    async def find_by_did(self, did: str) -> UserAccount:
        return await self._find_one(User.did, did)

    async def find_by_id(self, user_id: str) -> UserAccount:
        return await self._find_one(User.id, user_id)

    async def find_by_handle(self, handle: str) -> UserAccount:
        return await self._find_one(User.handle, handle)

    async def create(self, did: str, handle: str, profile: UserProfile) -> UserAccount:
        now = utc_now()
        user = User(
            id=str(ULID()),
            did=did,
            handle=handle,
            created_at=now,
            profile=Profile(
                display_name=profile.display_name,
                description=profile.description,
                avatar_url=profile.avatar_url,
                banner_url=profile.banner_url,
                updated_at=now,
            ),
        )
        async with self._transaction() as database_session:
            database_session.add(user)
            await database_session.flush()
            return to_user_account(user)

    async def update(self, user_id: str, profile: UserProfile) -> UserAccount:
        now = utc_now()
        async with self._transaction() as database_session:
            user: Optional[User] = (
                await database_session.scalars(select(User).where(User.id == user_id))
            ).first()
            if user is None:
                raise RepositoryError.not_found("user", user_id)

            if user.profile is None:
                user.profile = Profile(updated_at=now)
            user.profile.display_name = profile.display_name
            user.profile.description = profile.description
            user.profile.avatar_url = profile.avatar_url
            user.profile.banner_url = profile.banner_url
            user.profile.updated_at = now
            await database_session.flush()
            return to_user_account(user)

    async def delete(self, user_id: str) -> None:
        async with self._transaction() as database_session:
            result = await database_session.execute(
                delete(User).where(User.id == user_id)
            )
            if result.rowcount == 0:
                raise RepositoryError.not_found("user", user_id)

    async def count(self) -> int:
        async with self._transaction() as database_session:
            return await database_session.scalar(
                select(func.count()).select_from(User)
            ) or 0

    async def list(self, page: int, limit: int) -> List[UserAccount]:
        stmt = (
            select(User)
            .order_by(User.created_at, User.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        async with self._transaction() as database_session:
            users = (await database_session.scalars(stmt)).all()
            return [to_user_account(user) for user in users]


class SqlConnectionStore(SqlStore, ConnectionStore):
    """GitHub connections with tokens encrypted at rest."""

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        encryption_key: Fernet,
    ) -> None:
        super().__init__(database_session_maker)
        self.encryption_key = encryption_key

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self.encryption_key.encrypt(value.encode("utf-8")).decode("utf-8")

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self.encryption_key.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise RepositoryError(
                RepositoryErrorCode.DATA_ERROR, "Unable to decrypt stored GitHub token"
            ) from e

    async def find_by_user_id(self, user_id: str) -> GitHubConnection:
        async with self._transaction() as database_session:
            record: Optional[GitHubConnectionRecord] = (
                await database_session.scalars(
                    select(GitHubConnectionRecord).where(
                        GitHubConnectionRecord.user_id == user_id
                    )
                )
            ).first()
            if record is None:
                raise RepositoryError.not_found("github connection", user_id)

            return GitHubConnection(
                id=record.id,
                user_id=record.user_id,
                access_token=self._decrypt(record.access_token),
                refresh_token=self._decrypt(record.refresh_token),
                expires_at=record.expires_at,
            )

    async def create(self, connection: GitHubConnection) -> GitHubConnection:
        stmt = upsert_github_connection_stmt(
            connection.user_id,
            self._encrypt(connection.access_token),
            self._encrypt(connection.refresh_token),
            connection.expires_at,
            utc_now(),
        )
        async with self._transaction() as database_session:
            connection_id = (await database_session.scalars(stmt)).one()
        return connection.model_copy(update={"id": connection_id})

    async def update(self, connection: GitHubConnection) -> GitHubConnection:
        stmt = (
            update(GitHubConnectionRecord)
            .where(GitHubConnectionRecord.user_id == connection.user_id)
            .values(
                access_token=self._encrypt(connection.access_token),
                refresh_token=self._encrypt(connection.refresh_token),
                expires_at=connection.expires_at,
                updated_at=utc_now(),
            )
            .returning(GitHubConnectionRecord.id)
        )
        async with self._transaction() as database_session:
            connection_id = (await database_session.scalars(stmt)).first()
            if connection_id is None:
                raise RepositoryError.not_found("github connection", connection.user_id)
        return connection.model_copy(update={"id": connection_id})

    async def delete_by_user_id(self, user_id: str) -> None:
        async with self._transaction() as database_session:
            await database_session.execute(
                delete(GitHubConnectionRecord).where(
                    GitHubConnectionRecord.user_id == user_id
                )
            )
