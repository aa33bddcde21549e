"""
Unit tests for social.atmd.store.redis using fakeredis.
"""

import pytest

from social.atmd.account.errors import RepositoryError
from social.atmd.account.models import CorrelationState, Session, SessionUser
from social.atmd.store.redis import RedisSessionStore, RedisStateStore


class TestRedisStateStore:
    async def test_set_then_get(self, fake_redis_client):
        """A stored state is read back with its creation time."""
        store = RedisStateStore(fake_redis_client, ttl=60)
        state = CorrelationState(state="abc")

        await store.set("ctx-1", state)

        assert await store.get("ctx-1") == state

    async def test_missing_state_is_not_found(self, fake_redis_client):
        """An unknown context raises a not found repository error."""
        store = RedisStateStore(fake_redis_client)

        with pytest.raises(RepositoryError) as exc_info:
            await store.get("ctx-unknown")

        assert exc_info.value.is_not_found

    async def test_set_overwrites(self, fake_redis_client):
        """Only the latest state per context is kept."""
        store = RedisStateStore(fake_redis_client)

        await store.set("ctx-1", CorrelationState(state="first"))
        await store.set("ctx-1", CorrelationState(state="second"))

        assert (await store.get("ctx-1")).state == "second"

    async def test_state_expires_in_redis(self, fake_redis_client):
        """The key carries the configured TTL."""
        store = RedisStateStore(fake_redis_client, ttl=60)

        await store.set("ctx-1", CorrelationState(state="abc"))

        ttl = await fake_redis_client.ttl("auth_state:ctx-1")
        assert 0 < ttl <= 60


class TestRedisSessionStore:
    async def test_set_get_remove(self, fake_redis_client):
        """Sessions can be stored, read and removed."""
        store = RedisSessionStore(fake_redis_client, ttl=120)
        session = Session(user=SessionUser(id="user-1", did="did:plc:alice"))

        await store.set("ctx-1", session)
        assert await store.get("ctx-1") == session

        await store.remove("ctx-1")
        with pytest.raises(RepositoryError) as exc_info:
            await store.get("ctx-1")
        assert exc_info.value.is_not_found

    async def test_remove_missing_session(self, fake_redis_client):
        """Removing a session that does not exist is not an error."""
        store = RedisSessionStore(fake_redis_client)

        await store.remove("ctx-unknown")

    async def test_sessions_are_isolated_by_context(self, fake_redis_client):
        """Contexts never see each other's sessions."""
        store = RedisSessionStore(fake_redis_client)
        await store.set(
            "ctx-1", Session(user=SessionUser(id="user-1", did="did:plc:alice"))
        )

        with pytest.raises(RepositoryError):
            await store.get("ctx-2")
