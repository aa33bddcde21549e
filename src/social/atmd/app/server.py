import logging
from time import time
from typing import Optional

import aiohttp
import redis.asyncio as redis
import sentry_sdk
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.atmd.account.orchestrator import AccountOrchestrator
from social.atmd.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    OrchestratorAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from social.atmd.app.handlers.auth import (
    handle_bluesky_callback,
    handle_bluesky_login,
    handle_client_metadata,
    handle_github_callback,
    handle_github_install,
    handle_github_login,
    handle_logout,
    handle_profile_sync,
    handle_session,
    handle_user_by_handle,
)
from social.atmd.app.handlers.github import (
    handle_github_disconnect,
    handle_github_installations,
    handle_github_refresh,
)
from social.atmd.app.handlers.internal import handle_internal_alive
from social.atmd.app.metrics import create_metrics_client
from social.atmd.atproto.identity import BlueskyIdentityProvider
from social.atmd.github.provider import GitHubAppTokenProvider
from social.atmd.store.redis import RedisSessionStore, RedisStateStore
from social.atmd.store.sql import SqlAccountStore, SqlConnectionStore

logger = logging.getLogger(__name__)


def build_orchestrator(app: web.Application) -> AccountOrchestrator:
    settings = app[SettingsAppKey]
    http_session = app[SessionAppKey]
    redis_client = app[RedisClientAppKey]
    database_session_maker = app[DatabaseSessionMakerAppKey]

    return AccountOrchestrator(
        public_url=settings.public_url,
        github_client_id=settings.github_client_id,
        github_app_name=settings.github_app_name,
        identity_provider=BlueskyIdentityProvider(
            http_session,
            redis_client,
            settings.public_url,
            plc_hostname=settings.plc_hostname,
            appview_hostname=settings.appview_hostname,
            request_ttl=settings.state_ttl,
            session_ttl=settings.session_ttl,
        ),
        github_provider=GitHubAppTokenProvider(
            http_session, settings.github_client_id, settings.github_client_secret
        ),
        state_store=RedisStateStore(redis_client, ttl=settings.state_ttl),
        session_store=RedisSessionStore(redis_client, ttl=settings.session_ttl),
        account_store=SqlAccountStore(database_session_maker),
        connection_store=SqlConnectionStore(
            database_session_maker, settings.encryption_key
        ),
        metrics_client=app[MetricsClientAppKey],
        state_ttl=settings.state_ttl,
        call_timeout=settings.call_timeout,
    )


async def background_resources(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    metrics_client = create_metrics_client(
        settings.statsd_host, settings.statsd_port, debug=settings.debug
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    app[OrchestratorAppKey] = build_orchestrator(app)

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    # The matched route keeps path parameters out of the tag values.
    route = request.match_info.route.resource
    request_path = route.canonical if route is not None else request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            f"{settings.statsd_prefix}.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            f"{settings.statsd_prefix}.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            f"{settings.statsd_prefix}.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.post("/api/auth/bluesky", handle_bluesky_login),
            web.get("/api/auth/callback", handle_bluesky_callback),
            web.get("/api/auth/client-metadata.json", handle_client_metadata),
            web.get("/api/auth/session", handle_session),
            web.post("/api/auth/logout", handle_logout),
            web.get("/api/auth/github", handle_github_login),
            web.get("/api/auth/github/install", handle_github_install),
            web.get("/api/auth/github/callback", handle_github_callback),
        ]
    )

    app.add_routes(
        [
            web.delete("/api/github/connection", handle_github_disconnect),
            web.post("/api/github/connection/refresh", handle_github_refresh),
            web.get("/api/github/installations", handle_github_installations),
        ]
    )

    app.add_routes(
        [
            web.post("/api/users/me/profile/sync", handle_profile_sync),
            web.get("/api/users/{handle}", handle_user_by_handle),
        ]
    )

    app.add_routes([web.get("/internal/alive", handle_internal_alive)])


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings

    add_routes(app)

    app.cleanup_ctx.append(background_resources)

    return app
