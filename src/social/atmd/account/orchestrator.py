"""
Account Orchestrator

Coordinates the multi-step handshakes of the account context:

1. Bluesky sign-in: `start_bluesky_auth` stores a correlation state and
   returns the authorization URL; `handle_bluesky_auth_callback` verifies the
   state, resolves or creates the account and establishes the session.
2. GitHub linking: `start_github_access_token_flow` /
   `start_github_apps_installation` store a state and return the GitHub URL;
   `connect_github` verifies the state and persists the token pair.
3. Token lifecycle: `refresh_github_connection` rotates the token pair and
   `list_github_installations` refreshes lazily when the stored token has
   expired.

The orchestrator keeps no domain state of its own. Everything lives in the
injected stores; the orchestrator only sequences calls, validates correlation
tokens, decides when to refresh and maps every failure into an `AccountError`
returned inside a `Result`.
"""

import asyncio
import hmac
import logging
import secrets
import weakref
from time import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    TypeVar,
)
from urllib.parse import urlencode

import sentry_sdk

from social.atmd.account.errors import (
    AccountError,
    AccountErrorCode,
    GitHubConnectionError,
    RepositoryError,
    StateError,
)
from social.atmd.account.models import (
    CorrelationState,
    GitHubConnection,
    GitHubInstallation,
    Session,
    SessionUser,
    UserAccount,
)
from social.atmd.account.ports import (
    AccountStore,
    ConnectionStore,
    GitHubTokenProvider,
    IdentityProvider,
    SessionStore,
    StateStore,
)
from social.atmd.account.result import Result
from social.atmd.app.metrics import MetricsClient, NoOpMetricsClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_APPS_URL = "https://github.com/apps"

OPERATION_TIME_METRIC = "atmd.account.operation.time"
OPERATION_ERROR_METRIC = "atmd.account.operation.error"


class AccountOrchestrator:
    """
    Stateless coordinator for sign-in, sessions and GitHub linking.

    Args:
        public_url: External base URL of the service, used for the GitHub redirect
        github_client_id: OAuth client id of the GitHub App
        github_app_name: Slug of the GitHub App used for installation URLs
        identity_provider: Bluesky identity provider
        github_provider: GitHub token provider
        state_store: Correlation state storage keyed by request context
        session_store: Session storage keyed by request context
        account_store: User account persistence
        connection_store: GitHub connection persistence
        metrics_client: Optional metrics backend
        state_ttl: Seconds a correlation state stays valid
        call_timeout: Upper bound in seconds for each collaborator call, None for no bound
    """

    def __init__(
        self,
        *,
        public_url: str,
        github_client_id: str,
        github_app_name: str,
        identity_provider: IdentityProvider,
        github_provider: GitHubTokenProvider,
        state_store: StateStore,
        session_store: SessionStore,
        account_store: AccountStore,
        connection_store: ConnectionStore,
        metrics_client: Optional[MetricsClient] = None,
        state_ttl: int = 3600,
        call_timeout: Optional[float] = 10.0,
    ) -> None:
        self.public_url = public_url.rstrip("/")
        self.github_client_id = github_client_id
        self.github_app_name = github_app_name
        self.identity_provider = identity_provider
        self.github_provider = github_provider
        self.state_store = state_store
        self.session_store = session_store
        self.account_store = account_store
        self.connection_store = connection_store
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.state_ttl = state_ttl
        self.call_timeout = call_timeout
        self._refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # Plumbing

    async def _run(
        self,
        operation: str,
        message: str,
        flow: Callable[[], Awaitable[T]],
        expected: bool = False,
    ) -> Result[T]:
        """
        Execute a flow and map any failure into an `AccountError`.

        Expected failures (session validation, lookups) are logged at debug
        level. Everything else is logged at error level and reported to Sentry.
        Cancellation is not an `Exception` and propagates untouched.
        """
        start_time = time()
        try:
            return Result.ok(await flow())
        except Exception as e:
            error = AccountError(
                operation, AccountErrorCode.ACCOUNT_CONTEXT_ERROR, message, e
            )
            if expected:
                logger.debug("%s: %r", message, e)
            else:
                logger.error("%s: %r", message, e, exc_info=e)
                sentry_sdk.capture_exception(e)
            self.metrics_client.increment(
                OPERATION_ERROR_METRIC,
                1,
                tag_dict={
                    "operation": operation,
                    "retryable": str(error.retryable).lower(),
                },
            )
            return Result.fail(error)
        finally:
            self.metrics_client.timer(
                OPERATION_TIME_METRIC,
                time() - start_time,
                tag_dict={"operation": operation},
            )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        async with asyncio.timeout(self.call_timeout):
            return await awaitable

    async def _issue_state(self, context: str) -> str:
        state = secrets.token_urlsafe(32)
        await self._call(self.state_store.set(context, CorrelationState(state=state)))
        return state

    async def _load_state(self, context: str) -> CorrelationState:
        try:
            stored = await self._call(self.state_store.get(context))
        except RepositoryError as e:
            if e.is_not_found:
                raise StateError.missing() from e
            raise
        if stored.is_expired(self.state_ttl):
            raise StateError.expired()
        return stored

    @staticmethod
    def _check_state(stored: CorrelationState, received: Optional[str]) -> None:
        if received is None or not hmac.compare_digest(
            stored.state.encode("utf-8"), received.encode("utf-8")
        ):
            raise StateError.mismatch()

    def _refresh_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[user_id] = lock
        return lock

    # Bluesky identity flow

    def get_client_metadata(self) -> Dict[str, Any]:
        return self.identity_provider.client_metadata()

    async def start_bluesky_auth(self, handle: str, context: str) -> Result[str]:
        async def flow() -> str:
            state = await self._issue_state(context)
            url = await self._call(self.identity_provider.authorize(handle, state))
            return str(url)

        return await self._run("StartBlueskyAuth", "Failed to start Bluesky auth", flow)

    async def handle_bluesky_auth_callback(
        self,
        params: Mapping[str, str],
        context: str,
        session_context: Optional[str] = None,
    ) -> Result[UserAccount]:
        """
        Complete the Bluesky sign-in started under `context`.

        The session is stored under `session_context` when given, so the
        caller can hand the signed in browser a context it never had before
        authenticating.
        """

        async def flow() -> UserAccount:
            stored = await self._load_state(context)
            identity = await self._call(self.identity_provider.callback(params))
            self._check_state(stored, identity.state)

            user: Optional[UserAccount] = None
            try:
                user = await self._call(self.account_store.find_by_did(identity.did))
            except RepositoryError as e:
                if not e.is_not_found:
                    raise

            profile = await self._call(
                self.identity_provider.get_user_profile(identity.did)
            )

            if user is None:
                user = await self._call(
                    self.account_store.create(
                        identity.did, profile.handle, profile.to_user_profile()
                    )
                )
                logger.info("Created account %s for %s", user.id, user.did)

            target = session_context or context
            await self._call(
                self.session_store.set(
                    target, Session(user=SessionUser(id=user.id, did=user.did))
                )
            )
            if target != context:
                await self._call(self.session_store.remove(context))
            return user

        return await self._run(
            "HandleBlueskyAuthCallback", "Failed to handle Bluesky auth callback", flow
        )

    async def validate_session(self, context: str) -> Result[Session]:
        async def flow() -> Session:
            session = await self._call(self.session_store.get(context))
            did = await self._call(
                self.identity_provider.validate_session(session.user.did)
            )
            user = await self._call(self.account_store.find_by_did(did))
            return Session(user=SessionUser(id=user.id, did=user.did))

        return await self._run(
            "ValidateSession", "Failed to validate session", flow, expected=True
        )

    async def logout(self, context: str) -> Result[None]:
        async def flow() -> None:
            await self._call(self.session_store.remove(context))

        return await self._run("Logout", "Failed to logout", flow)

    # GitHub OAuth / App flow

    async def start_github_access_token_flow(self, context: str) -> Result[str]:
        async def flow() -> str:
            state = await self._issue_state(context)
            query = urlencode(
                {
                    "client_id": self.github_client_id,
                    "redirect_uri": f"{self.public_url}/api/auth/github/callback",
                    "state": state,
                }
            )
            return f"{GITHUB_AUTHORIZE_URL}?{query}"

        return await self._run(
            "StartGitHubAccessTokenFlow",
            "Failed to start GitHub access token flow",
            flow,
        )

    async def start_github_apps_installation(self, context: str) -> Result[str]:
        async def flow() -> str:
            state = await self._issue_state(context)
            query = urlencode({"state": state})
            return f"{GITHUB_APPS_URL}/{self.github_app_name}/installations/new?{query}"

        return await self._run(
            "StartGitHubAppsInstallation",
            "Failed to start GitHub Apps installation",
            flow,
        )

    async def connect_github(
        self, user_id: str, code: str, state: str, context: str
    ) -> Result[None]:
        async def flow() -> None:
            stored = await self._load_state(context)
            self._check_state(stored, state)
            tokens = await self._call(self.github_provider.get_access_token(code))
            await self._call(
                self.connection_store.create(
                    GitHubConnection(
                        user_id=user_id,
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token or None,
                        expires_at=tokens.expires_at or None,
                    )
                )
            )

        return await self._run("ConnectGitHub", "Failed to connect to GitHub", flow)

    async def disconnect_github(self, user_id: str) -> Result[None]:
        async def flow() -> None:
            await self._call(self.connection_store.delete_by_user_id(user_id))

        return await self._run("DisconnectGitHub", "Failed to disconnect GitHub", flow)

    async def _rotate(self, connection: GitHubConnection) -> GitHubConnection:
        # Callers must hold the user's refresh lock.
        if not connection.refresh_token:
            raise GitHubConnectionError.unrefreshable()

        tokens = await self._call(
            self.github_provider.refresh_access_token(connection.refresh_token)
        )
        # Keep the previous expiry when the provider does not report a new one.
        return await self._call(
            self.connection_store.update(
                GitHubConnection(
                    id=connection.id,
                    user_id=connection.user_id,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token or None,
                    expires_at=tokens.expires_at or connection.expires_at,
                )
            )
        )

    async def refresh_github_connection(self, user_id: str) -> Result[GitHubConnection]:
        async def flow() -> GitHubConnection:
            async with self._refresh_lock(user_id):
                connection = await self._call(
                    self.connection_store.find_by_user_id(user_id)
                )
                return await self._rotate(connection)

        return await self._run(
            "RefreshGitHubConnection", "Failed to refresh GitHub connection", flow
        )

    async def _refresh_expired(self, observed: GitHubConnection) -> GitHubConnection:
        async with self._refresh_lock(observed.user_id):
            current = await self._call(
                self.connection_store.find_by_user_id(observed.user_id)
            )
            if current.access_token != observed.access_token or not current.is_expired():
                # Rotated by a concurrent flow while we waited for the lock.
                return current
            return await self._rotate(current)

    async def list_github_installations(
        self, user_id: str
    ) -> Result[List[GitHubInstallation]]:
        async def flow() -> List[GitHubInstallation]:
            connection = await self._call(self.connection_store.find_by_user_id(user_id))
            if connection.is_expired():
                connection = await self._refresh_expired(connection)
            return await self._call(
                self.github_provider.list_installations(connection.access_token)
            )

        return await self._run(
            "ListGitHubInstallations",
            "Failed to get GitHub installations",
            flow,
            expected=True,
        )

    # Account lookups

    async def get_user_by_id(self, user_id: str) -> Result[UserAccount]:
        return await self._run(
            "GetUserById",
            "Failed to get user",
            lambda: self._call(self.account_store.find_by_id(user_id)),
            expected=True,
        )

    async def get_user_by_handle(self, handle: str) -> Result[UserAccount]:
        return await self._run(
            "GetUserByHandle",
            "Failed to get user",
            lambda: self._call(self.account_store.find_by_handle(handle)),
            expected=True,
        )

    async def sync_profile(self, user_id: str, did: str) -> Result[UserAccount]:
        async def flow() -> UserAccount:
            profile = await self._call(self.identity_provider.get_user_profile(did))
            return await self._call(
                self.account_store.update(user_id, profile.to_user_profile())
            )

        return await self._run("SyncProfile", "Failed to update profile", flow)

    async def delete_user(self, user_id: str) -> Result[None]:
        return await self._run(
            "DeleteUser",
            "Failed to delete user",
            lambda: self._call(self.account_store.delete(user_id)),
        )

    async def get_github_connection(self, user_id: str) -> Result[GitHubConnection]:
        return await self._run(
            "GetGitHubConnection",
            "Failed to get GitHub connection",
            lambda: self._call(self.connection_store.find_by_user_id(user_id)),
            expected=True,
        )

    async def count_users(self) -> Result[int]:
        return await self._run(
            "CountUsers",
            "Failed to count users",
            lambda: self._call(self.account_store.count()),
            expected=True,
        )

    async def list_users(self, page: int, limit: int) -> Result[List[UserAccount]]:
        async def flow() -> List[UserAccount]:
            if page < 1 or limit < 1:
                raise ValueError(f"Invalid page or limit: page={page} limit={limit}")
            return await self._call(self.account_store.list(page, limit))

        return await self._run("ListUsers", "Failed to list users", flow, expected=True)
