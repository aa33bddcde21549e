from typing import Any, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, ValidationError

from social.atmd.account.errors import ExternalServiceError, ExternalServiceErrorCode
from social.atmd.account.models import ProviderProfile


class AuthorizationServer(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: str


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    async with session.get(f"{pds}/.well-known/oauth-protected-resource") as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Any]:
    async with session.get(
        f"{authorization_server}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def discover_authorization_server(
    session: ClientSession, pds: str
) -> AuthorizationServer:
    """Find the authorization server metadata for the PDS hosting an account."""
    protected_resource = await oauth_protected_resource(session, pds)
    if not isinstance(protected_resource, dict):
        raise ExternalServiceError(
            "bluesky",
            ExternalServiceErrorCode.REQUEST_FAILED,
            f"No protected resource metadata for {pds}",
        )

    first_authorization_server = next(
        iter(protected_resource.get("authorization_servers", [])), None
    )
    if first_authorization_server is None:
        raise ExternalServiceError(
            "bluesky",
            ExternalServiceErrorCode.REQUEST_FAILED,
            f"No authorization server for {pds}",
        )

    metadata = await oauth_authorization_server(session, first_authorization_server)
    try:
        return AuthorizationServer.model_validate(metadata)
    except ValidationError as e:
        raise ExternalServiceError(
            "bluesky",
            ExternalServiceErrorCode.RESPONSE_INVALID,
            f"Invalid authorization server metadata from {first_authorization_server}",
        ) from e


async def get_profile(
    session: ClientSession, appview_hostname: str, actor: str
) -> ProviderProfile:
    """Fetch a public profile from the AppView (`app.bsky.actor.getProfile`)."""
    async with session.get(
        f"https://{appview_hostname}/xrpc/app.bsky.actor.getProfile",
        params={"actor": actor},
    ) as resp:
        if resp.status == 429 or resp.status >= 500:
            raise ExternalServiceError.from_status(
                "bluesky", resp.status, f"Profile lookup for {actor} failed"
            )
        if resp.status != 200:
            raise ExternalServiceError(
                "bluesky",
                ExternalServiceErrorCode.PROFILE_RETRIEVAL_FAILED,
                f"Profile lookup for {actor} returned {resp.status}",
            )
        body = await resp.json()

    if not isinstance(body, dict) or "handle" not in body:
        raise ExternalServiceError(
            "bluesky",
            ExternalServiceErrorCode.PROFILE_RETRIEVAL_FAILED,
            f"Invalid profile for {actor}",
        )

    return ProviderProfile(
        handle=body["handle"],
        display_name=body.get("displayName"),
        description=body.get("description"),
        avatar=body.get("avatar"),
        banner=body.get("banner"),
    )
