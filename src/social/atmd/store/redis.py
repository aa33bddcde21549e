"""Redis backed state and session stores.

Both stores keep one JSON document per request context and let Redis expire
it, so abandoned authorization attempts and sessions clean themselves up.
"""

from typing import Optional

import redis.asyncio as redis

from social.atmd.account.errors import RepositoryError
from social.atmd.account.models import CorrelationState, Session
from social.atmd.account.ports import SessionStore, StateStore

STATE_KEY_PREFIX = "auth_state"
SESSION_KEY_PREFIX = "auth_session"


class RedisStateStore(StateStore):
    def __init__(self, redis_client: redis.Redis, ttl: Optional[int] = 3600) -> None:
        self.redis_client = redis_client
        self.ttl = ttl

    async def get(self, context: str) -> CorrelationState:
        value = await self.redis_client.get(f"{STATE_KEY_PREFIX}:{context}")
        if value is None:
            raise RepositoryError.not_found("state", context)
        return CorrelationState.model_validate_json(value)

    async def set(self, context: str, state: CorrelationState) -> None:
        await self.redis_client.set(
            f"{STATE_KEY_PREFIX}:{context}", state.model_dump_json(), ex=self.ttl
        )


class RedisSessionStore(SessionStore):
    def __init__(self, redis_client: redis.Redis, ttl: Optional[int] = 2592000) -> None:
        self.redis_client = redis_client
        self.ttl = ttl

    async def get(self, context: str) -> Session:
        value = await self.redis_client.get(f"{SESSION_KEY_PREFIX}:{context}")
        if value is None:
            raise RepositoryError.not_found("session", context)
        return Session.model_validate_json(value)

    async def set(self, context: str, session: Session) -> None:
        await self.redis_client.set(
            f"{SESSION_KEY_PREFIX}:{context}", session.model_dump_json(), ex=self.ttl
        )

    async def remove(self, context: str) -> None:
        await self.redis_client.delete(f"{SESSION_KEY_PREFIX}:{context}")
