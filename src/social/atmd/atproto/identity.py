"""
Bluesky Identity Provider

An AT Protocol OAuth public client implementing the `IdentityProvider`
interface of the account context.

The flow follows the AT Protocol OAuth profile:
- Proof Key for Code Exchange (PKCE, RFC 7636) with S256
- Pushed Authorization Requests (PAR, RFC 9126)
- DPoP bound tokens with server issued nonces

Stage 1, `authorize`: resolve the handle to its PDS, discover the
authorization server, push the authorization request and remember the PKCE
verifier and DPoP key under the correlation state in Redis.

Stage 2, `callback`: look up the pending request by state, exchange the code
for tokens at the token endpoint and keep the resulting OAuth session in
Redis keyed by DID.

`validate_session` confirms the OAuth session still exists and refreshes the
access token when it is about to expire. Profiles are read from the public
AppView and need no token.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import weakref
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import redis.asyncio as redis
from aiohttp import ClientSession
from jwcrypto import jwk
from pydantic import BaseModel

from social.atmd.account.errors import ExternalServiceError, ExternalServiceErrorCode
from social.atmd.account.models import CallbackResult, ProviderProfile, utc_now
from social.atmd.account.ports import IdentityProvider
from social.atmd.atproto.dpop import dpop_request, generate_dpop_key
from social.atmd.atproto.pds import discover_authorization_server, get_profile
from social.atmd.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)

OAUTH_SCOPE = "atproto transition:generic"

# Refresh the access token when it expires within this window.
REFRESH_SKEW = timedelta(seconds=60)


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth client metadata document (RFC 7591) served at the client id URL.

    Authorization servers fetch it to validate redirect URIs and the
    authentication method of the client.
    """

    client_id: str
    client_name: str
    client_uri: str
    application_type: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    scope: str
    token_endpoint_auth_method: str
    dpop_bound_access_tokens: bool


class PendingAuthorization(BaseModel):
    """Authorization request waiting for its callback, keyed by state."""

    did: str
    handle: str
    pds: str
    issuer: str
    token_endpoint: str
    pkce_verifier: str
    dpop_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None


class OAuthTokenSession(BaseModel):
    """Tokens obtained from the authorization server, keyed by DID."""

    did: str
    issuer: str
    token_endpoint: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    dpop_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None


class BlueskyIdentityProvider(IdentityProvider):
    """
    AT Protocol OAuth client.

    Args:
        http_session: Shared aiohttp client session
        redis_client: Redis client holding pending requests and OAuth sessions
        public_url: External base URL of the service
        plc_hostname: PLC directory used to resolve did:plc identities
        appview_hostname: Bluesky AppView serving public profiles
        request_ttl: Seconds a pending authorization request is kept
        session_ttl: Seconds an OAuth session is kept
        client_name: Name shown by authorization servers
    """

    def __init__(
        self,
        http_session: ClientSession,
        redis_client: redis.Redis,
        public_url: str,
        plc_hostname: str = "plc.directory",
        appview_hostname: str = "public.api.bsky.app",
        request_ttl: int = 3600,
        session_ttl: int = 2592000,
        client_name: str = "atmd",
    ) -> None:
        self.http_session = http_session
        self.redis_client = redis_client
        self.public_url = public_url.rstrip("/")
        self.plc_hostname = plc_hostname
        self.appview_hostname = appview_hostname
        self.request_ttl = request_ttl
        self.session_ttl = session_ttl
        self.client_name = client_name
        self._refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def client_id(self) -> str:
        return f"{self.public_url}/api/auth/client-metadata.json"

    @property
    def redirect_uri(self) -> str:
        return f"{self.public_url}/api/auth/callback"

    def client_metadata(self) -> Dict[str, Any]:
        return ATProtocolOAuthClientMetadata(
            client_id=self.client_id,
            client_name=self.client_name,
            client_uri=self.public_url,
            application_type="web",
            redirect_uris=[self.redirect_uri],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            scope=OAUTH_SCOPE,
            token_endpoint_auth_method="none",
            dpop_bound_access_tokens=True,
        ).model_dump()

    async def authorize(self, handle: str, state: str) -> str:
        resolved = await resolve_subject(self.http_session, self.plc_hostname, handle)
        if resolved is None:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                f"Unable to resolve {handle}",
            )

        authorization_server = await discover_authorization_server(
            self.http_session, resolved.pds
        )

        (pkce_verifier, code_challenge) = generate_pkce_verifier()
        dpop_key = generate_dpop_key()

        par_response = await dpop_request(
            self.http_session,
            authorization_server.pushed_authorization_request_endpoint,
            dpop_key,
            {
                "response_type": "code",
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": state,
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": OAUTH_SCOPE,
                "login_hint": resolved.handle,
            },
        )
        if par_response.status not in (200, 201):
            raise ExternalServiceError.from_status(
                "bluesky", par_response.status, "Pushed authorization request failed"
            )

        request_uri = par_response.body.get("request_uri", None)
        if request_uri is None:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.RESPONSE_INVALID,
                "No PAR request URI found",
            )

        pending = PendingAuthorization(
            did=resolved.did,
            handle=resolved.handle,
            pds=resolved.pds,
            issuer=authorization_server.issuer,
            token_endpoint=authorization_server.token_endpoint,
            pkce_verifier=pkce_verifier,
            dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
            dpop_nonce=par_response.nonce,
        )
        await self.redis_client.set(
            f"oauth_request:{state}", pending.model_dump_json(), ex=self.request_ttl
        )

        parsed = urlparse(authorization_server.authorization_endpoint)
        query = dict(parse_qsl(parsed.query))
        query.update({"client_id": self.client_id, "request_uri": request_uri})
        return urlunparse(parsed._replace(query=urlencode(query)))

    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        error = params.get("error")
        if error is not None:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                params.get("error_description") or error,
            )

        state = params.get("state")
        code = params.get("code")
        if not state or not code:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "Invalid request: missing state or code",
            )

        raw_pending = await self.redis_client.getdel(f"oauth_request:{state}")
        if raw_pending is None:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "Invalid request: no matching authorization request",
            )
        pending = PendingAuthorization.model_validate_json(raw_pending)

        issuer = params.get("iss")
        if issuer is not None and issuer != pending.issuer:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "Invalid request: issuer mismatch",
            )

        dpop_key = jwk.JWK(**pending.dpop_jwk)
        now = utc_now()
        token_response = await dpop_request(
            self.http_session,
            pending.token_endpoint,
            dpop_key,
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": pending.pkce_verifier,
            },
            nonce=pending.dpop_nonce,
        )
        if token_response.status != 200:
            raise ExternalServiceError.from_status(
                "bluesky", token_response.status, "Token exchange failed"
            )

        body = token_response.body
        access_token = body.get("access_token", None)
        if access_token is None:
            raise ExternalServiceError(
                "bluesky", ExternalServiceErrorCode.RESPONSE_INVALID, "No access token"
            )

        if body.get("sub", None) != pending.did:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "Token subject does not match the requested identity",
            )

        await self._store_session(
            OAuthTokenSession(
                did=pending.did,
                issuer=pending.issuer,
                token_endpoint=pending.token_endpoint,
                access_token=access_token,
                refresh_token=body.get("refresh_token", None),
                expires_at=now + timedelta(0, body.get("expires_in", 1800)),
                dpop_jwk=pending.dpop_jwk,
                dpop_nonce=token_response.nonce,
            )
        )

        return CallbackResult(did=pending.did, state=state)

    async def validate_session(self, did: str) -> str:
        oauth_session = await self._load_session(did)

        if self._needs_refresh(oauth_session):
            async with self._refresh_lock(did):
                # Another request may have refreshed while this one waited.
                oauth_session = await self._load_session(did)
                if self._needs_refresh(oauth_session):
                    oauth_session = await self._refresh(oauth_session)

        return oauth_session.did

    async def get_user_profile(self, did: str) -> ProviderProfile:
        return await get_profile(self.http_session, self.appview_hostname, did)

    def _refresh_lock(self, did: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(did)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[did] = lock
        return lock

    @staticmethod
    def _needs_refresh(oauth_session: OAuthTokenSession) -> bool:
        return oauth_session.expires_at - REFRESH_SKEW <= utc_now()

    async def _load_session(self, did: str) -> OAuthTokenSession:
        raw_session = await self.redis_client.get(f"oauth_session:{did}")
        if raw_session is None:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.SESSION_NOT_FOUND,
                f"No OAuth session for {did}",
            )
        return OAuthTokenSession.model_validate_json(raw_session)

    async def _discard_session(self, oauth_session: OAuthTokenSession) -> None:
        """Delete the stored session unless it was replaced since it was read."""
        key = f"oauth_session:{oauth_session.did}"
        raw_session = await self.redis_client.get(key)
        if raw_session is None:
            return
        stored = OAuthTokenSession.model_validate_json(raw_session)
        if stored.refresh_token != oauth_session.refresh_token:
            logger.debug("OAuth session for %s was replaced, keeping it", stored.did)
            return
        await self.redis_client.delete(key)

    async def _refresh(self, oauth_session: OAuthTokenSession) -> OAuthTokenSession:
        if oauth_session.refresh_token is None:
            await self._discard_session(oauth_session)
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.SESSION_NOT_FOUND,
                f"OAuth session for {oauth_session.did} expired",
            )

        now = utc_now()
        response = await dpop_request(
            self.http_session,
            oauth_session.token_endpoint,
            jwk.JWK(**oauth_session.dpop_jwk),
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "grant_type": "refresh_token",
                "refresh_token": oauth_session.refresh_token,
            },
            nonce=oauth_session.dpop_nonce,
        )
        if response.status == 429 or response.status >= 500:
            raise ExternalServiceError.from_status(
                "bluesky", response.status, "Token refresh failed"
            )
        if response.status != 200 or "access_token" not in response.body:
            # The grant was revoked or is unusable: the user has to sign in again.
            await self._discard_session(oauth_session)
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                f"Token refresh rejected with {response.status}",
            )

        refreshed = oauth_session.model_copy(
            update={
                "access_token": response.body["access_token"],
                "refresh_token": response.body.get(
                    "refresh_token", oauth_session.refresh_token
                ),
                "expires_at": now + timedelta(0, response.body.get("expires_in", 1800)),
                "dpop_nonce": response.nonce,
            }
        )
        await self._store_session(refreshed)
        logger.debug("Refreshed OAuth session for %s", refreshed.did)
        return refreshed

    async def _store_session(self, oauth_session: OAuthTokenSession) -> None:
        await self.redis_client.set(
            f"oauth_session:{oauth_session.did}",
            oauth_session.model_dump_json(),
            ex=self.session_ttl,
        )
