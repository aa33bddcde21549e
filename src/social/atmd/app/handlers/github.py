import logging

from aiohttp import web

from social.atmd.app.config import OrchestratorAppKey
from social.atmd.app.handlers.helpers import error_response, require_session

logger = logging.getLogger(__name__)


async def handle_github_disconnect(request: web.Request):
    _, session = await require_session(request)
    result = await request.app[OrchestratorAppKey].disconnect_github(session.user.id)
    if not result.success:
        return error_response(result.error)
    return web.Response(status=204)


async def handle_github_refresh(request: web.Request):
    _, session = await require_session(request)
    result = await request.app[OrchestratorAppKey].refresh_github_connection(
        session.user.id
    )
    if not result.success:
        return error_response(result.error)

    # Tokens never leave the service.
    connection = result.value
    return web.json_response(
        {
            "id": connection.id,
            "expires_at": (
                connection.expires_at.isoformat() if connection.expires_at else None
            ),
        }
    )


async def handle_github_installations(request: web.Request):
    _, session = await require_session(request)
    result = await request.app[OrchestratorAppKey].list_github_installations(
        session.user.id
    )
    if not result.success:
        return error_response(result.error)
    return web.json_response(
        {"installations": [installation.model_dump() for installation in result.value]}
    )
