"""
Sign-in, Session and User Handlers

Endpoints:
- POST /api/auth/bluesky - Start the Bluesky sign-in, returns the authorization URL
- GET /api/auth/callback - Bluesky OAuth callback, establishes the session
- GET /api/auth/client-metadata.json - OAuth client metadata
- GET /api/auth/session - Current session
- POST /api/auth/logout - Remove the session
- GET /api/auth/github - Redirect to the GitHub OAuth authorization page
- GET /api/auth/github/install - Redirect to the GitHub App installation page
- GET /api/auth/github/callback - GitHub OAuth callback, stores the connection
- POST /api/users/me/profile/sync - Re-read the profile from Bluesky
- GET /api/users/{handle} - Public account lookup

All of them are thin: they read the request context cookie, call the
account orchestrator and translate its `Result` into a response.
"""

import json
import logging
from typing import Optional

from aiohttp import web

from social.atmd.app.config import OrchestratorAppKey, SettingsAppKey
from social.atmd.app.handlers.helpers import (
    error_response,
    existing_context,
    new_context,
    request_context,
    require_session,
    set_context_cookie,
    user_body,
)

logger = logging.getLogger(__name__)


async def handle_bluesky_login(request: web.Request):
    """
    Start the Bluesky sign-in.

    Accepts a JSON body `{"handle": ...}` or a form with a `handle` field.
    """
    settings = request.app[SettingsAppKey]
    orchestrator = request.app[OrchestratorAppKey]

    handle: Optional[str] = None
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except json.JSONDecodeError:
            body = None
        if isinstance(body, dict):
            handle = body.get("handle", None)
    else:
        data = await request.post()
        handle = data.get("handle", None)  # type: ignore

    if not isinstance(handle, str) or len(handle.strip()) == 0:
        return web.json_response({"error": "No handle provided"}, status=400)

    context, is_new = request_context(request)
    result = await orchestrator.start_bluesky_auth(handle.strip(), context)
    if not result.success:
        return error_response(result.error)

    response = web.json_response({"url": result.value})
    if is_new:
        set_context_cookie(response, settings, context)
    return response


async def handle_bluesky_callback(request: web.Request):
    settings = request.app[SettingsAppKey]
    orchestrator = request.app[OrchestratorAppKey]

    context = existing_context(request)
    if context is None:
        return web.json_response({"error": "Missing request context"}, status=400)

    # The signed in browser gets a context value it did not have before.
    session_context = new_context()
    result = await orchestrator.handle_bluesky_auth_callback(
        dict(request.query), context, session_context
    )
    if not result.success:
        return error_response(result.error)

    response = web.HTTPFound(f"{settings.public_url.rstrip('/')}/")
    set_context_cookie(response, settings, session_context)
    raise response


async def handle_client_metadata(request: web.Request):
    return web.json_response(request.app[OrchestratorAppKey].get_client_metadata())


async def handle_session(request: web.Request):
    _, session = await require_session(request)
    return web.json_response({"user": session.user.model_dump()})


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    context = existing_context(request)
    if context is not None:
        result = await request.app[OrchestratorAppKey].logout(context)
        if not result.success:
            return error_response(result.error)

    response = web.json_response({"ok": True})
    response.del_cookie(settings.context_cookie_name, path="/")
    return response


async def handle_github_login(request: web.Request):
    context, _ = await require_session(request)

    result = await request.app[OrchestratorAppKey].start_github_access_token_flow(
        context
    )
    if not result.success:
        return error_response(result.error)
    raise web.HTTPFound(result.value)


async def handle_github_install(request: web.Request):
    context, _ = await require_session(request)

    result = await request.app[OrchestratorAppKey].start_github_apps_installation(
        context
    )
    if not result.success:
        return error_response(result.error)
    raise web.HTTPFound(result.value)


async def handle_github_callback(request: web.Request):
    settings = request.app[SettingsAppKey]
    context, session = await require_session(request)

    code = request.query.get("code", None)
    state = request.query.get("state", None)
    if code is None or state is None:
        return web.json_response({"error": "Missing code or state"}, status=400)

    result = await request.app[OrchestratorAppKey].connect_github(
        session.user.id, code, state, context
    )
    if not result.success:
        return error_response(result.error)

    raise web.HTTPFound(f"{settings.public_url.rstrip('/')}/")


async def handle_user_by_handle(request: web.Request):
    result = await request.app[OrchestratorAppKey].get_user_by_handle(
        request.match_info["handle"]
    )
    if not result.success:
        return error_response(result.error)
    return web.json_response(user_body(result.value))


async def handle_profile_sync(request: web.Request):
    _, session = await require_session(request)
    result = await request.app[OrchestratorAppKey].sync_profile(
        session.user.id, session.user.did
    )
    if not result.success:
        return error_response(result.error)
    return web.json_response(user_body(result.value))
