import json
import logging
import secrets
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from social.atmd.account.errors import (
    AccountError,
    GitHubConnectionError,
    RepositoryError,
    StateError,
)
from social.atmd.account.models import Session, UserAccount
from social.atmd.app.config import OrchestratorAppKey, Settings, SettingsAppKey

logger = logging.getLogger(__name__)


def request_context(request: web.Request) -> Tuple[str, bool]:
    """
    Return the opaque request context and whether it was just minted.

    The context is a random cookie value that keys the correlation state and
    the session. A new one is generated when the cookie is missing; the
    caller must then set it on its response with `set_context_cookie`.
    """
    settings = request.app[SettingsAppKey]
    context = request.cookies.get(settings.context_cookie_name)
    if context:
        return context, False
    return new_context(), True


def new_context() -> str:
    return secrets.token_urlsafe(32)


def existing_context(request: web.Request) -> Optional[str]:
    settings = request.app[SettingsAppKey]
    return request.cookies.get(settings.context_cookie_name) or None


def set_context_cookie(response: web.StreamResponse, settings: Settings, context: str):
    response.set_cookie(
        settings.context_cookie_name,
        context,
        max_age=settings.session_ttl,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="Lax",
        path="/",
    )


def error_status(error: AccountError) -> int:
    cause = error.cause
    if isinstance(cause, StateError):
        return 400
    if isinstance(cause, RepositoryError) and cause.is_not_found:
        return 404
    if isinstance(cause, GitHubConnectionError):
        return 409
    if error.retryable:
        return 503
    return 500


def error_body(error: AccountError) -> Dict[str, Any]:
    return {
        "error": error.message,
        "operation": error.operation,
        "retryable": error.retryable,
    }


def error_response(error: AccountError, status: Optional[int] = None) -> web.Response:
    return web.json_response(error_body(error), status=status or error_status(error))


def user_body(user: UserAccount) -> Dict[str, Any]:
    return {
        "id": user.id,
        "did": user.did,
        "handle": user.handle,
        "profile": user.profile.model_dump(),
    }


async def require_session(request: web.Request) -> Tuple[str, Session]:
    """
    Validate the session of the request context.

    Raises:
        web.HTTPUnauthorized: When there is no context or the session is not valid
    """
    context = existing_context(request)
    if context is None:
        raise web.HTTPUnauthorized(
            body=json.dumps({"error": "Not Authorized"}),
            content_type="application/json",
        )

    result = await request.app[OrchestratorAppKey].validate_session(context)
    if not result.success or result.value is None:
        raise web.HTTPUnauthorized(
            body=json.dumps({"error": "Not Authorized"}),
            content_type="application/json",
        )
    return context, result.value
