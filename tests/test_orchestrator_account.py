"""
Tests for account lookups and maintenance in social.atmd.account.orchestrator
"""

import logging

from social.atmd.account.errors import (
    AccountErrorCode,
    RepositoryError,
    RepositoryErrorCode,
)
from social.atmd.account.models import (
    GitHubConnection,
    ProviderProfile,
    UserProfile,
)


async def create_user(account_store, did: str, handle: str):
    return await account_store.create(did, handle, UserProfile(display_name=handle))


class TestUserLookups:
    async def test_get_user_by_id(self, orchestrator, account_store):
        """Known ids return the stored account."""
        user = await create_user(account_store, "did:plc:alice", "alice.bsky.social")

        result = await orchestrator.get_user_by_id(user.id)

        assert result.success
        assert result.value == user

    async def test_get_user_by_handle(self, orchestrator, account_store):
        """Known handles return the stored account."""
        user = await create_user(account_store, "did:plc:alice", "alice.bsky.social")

        result = await orchestrator.get_user_by_handle("alice.bsky.social")

        assert result.success
        assert result.value.id == user.id

    async def test_unknown_user_preserves_not_found_cause(self, orchestrator, caplog):
        """Callers can tell absence apart from failure."""
        with caplog.at_level(logging.DEBUG, logger="social.atmd.account.orchestrator"):
            result = await orchestrator.get_user_by_handle("nobody.bsky.social")

        assert not result.success
        assert result.error.operation == "GetUserByHandle"
        assert result.error.code == AccountErrorCode.ACCOUNT_CONTEXT_ERROR
        assert isinstance(result.error.cause, RepositoryError)
        assert result.error.cause.is_not_found
        assert not any(record.levelno >= logging.ERROR for record in caplog.records)

    async def test_store_failure_is_not_absence(self, orchestrator, account_store):
        """Any other store failure is reported with its own code."""

        async def broken(user_id):
            raise RepositoryError(RepositoryErrorCode.UNKNOWN_ERROR, "connection reset")

        account_store.find_by_id = broken

        result = await orchestrator.get_user_by_id("user-1")

        assert not result.success
        assert result.error.cause.code == RepositoryErrorCode.UNKNOWN_ERROR
        assert not result.error.cause.is_not_found


class TestSyncProfile:
    async def test_replaces_profile_fields(
        self, orchestrator, account_store, identity_provider
    ):
        """The stored profile becomes exactly the provider's current profile."""
        user = await account_store.create(
            "did:plc:alice",
            "alice.bsky.social",
            UserProfile(display_name="Old", description="Old bio", avatar_url="old"),
        )
        identity_provider.profile = ProviderProfile(
            handle="alice.bsky.social", display_name="New"
        )

        result = await orchestrator.sync_profile(user.id, user.did)

        assert result.success
        assert result.value.profile == UserProfile(display_name="New")
        assert account_store.users[user.id].profile == UserProfile(display_name="New")
        assert identity_provider.profile_calls == ["did:plc:alice"]

    async def test_unknown_user(self, orchestrator):
        """Syncing a user that does not exist fails."""
        result = await orchestrator.sync_profile("user-404", "did:plc:alice")

        assert not result.success
        assert result.error.operation == "SyncProfile"
        assert result.error.cause.is_not_found


class TestDeleteUser:
    async def test_deletes(self, orchestrator, account_store):
        """The account is removed from the store."""
        user = await create_user(account_store, "did:plc:alice", "alice.bsky.social")

        result = await orchestrator.delete_user(user.id)

        assert result.success
        assert account_store.users == {}

    async def test_unknown_user_is_logged_as_error(self, orchestrator, caplog):
        """Deleting an unknown user is an unexpected failure."""
        with caplog.at_level(logging.DEBUG, logger="social.atmd.account.orchestrator"):
            result = await orchestrator.delete_user("user-404")

        assert not result.success
        assert result.error.operation == "DeleteUser"
        assert result.error.cause.is_not_found
        assert any(record.levelno == logging.ERROR for record in caplog.records)


class TestCountAndList:
    async def test_count(self, orchestrator, account_store):
        """All accounts are counted."""
        await create_user(account_store, "did:plc:alice", "alice.bsky.social")
        await create_user(account_store, "did:plc:bob", "bob.bsky.social")

        result = await orchestrator.count_users()

        assert result.success
        assert result.value == 2

    async def test_list_pages(self, orchestrator, account_store):
        """Pages are 1-based and bounded by the limit."""
        for name in ("alice", "bob", "carol"):
            await create_user(account_store, f"did:plc:{name}", f"{name}.bsky.social")

        first = await orchestrator.list_users(1, 2)
        second = await orchestrator.list_users(2, 2)

        assert [user.handle for user in first.value] == [
            "alice.bsky.social",
            "bob.bsky.social",
        ]
        assert [user.handle for user in second.value] == ["carol.bsky.social"]

    async def test_list_rejects_invalid_page(self, orchestrator):
        """Page and limit must be positive."""
        for page, limit in ((0, 10), (1, 0), (-1, -1)):
            result = await orchestrator.list_users(page, limit)

            assert not result.success
            assert isinstance(result.error.cause, ValueError)
            assert result.error.retryable is False


class TestGetGitHubConnection:
    async def test_found(self, orchestrator, connection_store):
        """The stored connection is returned."""
        connection = GitHubConnection(
            id="conn-1", user_id="user-1", access_token="gho_token"
        )
        connection_store.connections["user-1"] = connection

        result = await orchestrator.get_github_connection("user-1")

        assert result.success
        assert result.value == connection

    async def test_missing(self, orchestrator):
        """Users without a connection get a not found cause."""
        result = await orchestrator.get_github_connection("user-1")

        assert not result.success
        assert result.error.operation == "GetGitHubConnection"
        assert result.error.cause.is_not_found
