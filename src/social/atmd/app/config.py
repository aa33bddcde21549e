"""
Configuration Module for the atmd Service

Settings are loaded from environment variables with pydantic-settings and
validated on startup. Shared resources created during application startup
are exposed to handlers through typed `web.AppKey`s, so handlers never reach
for module globals.

Key configuration areas:
- Service identification and networking
- Database and cache connections
- Encryption of stored GitHub tokens
- GitHub App credentials
- Flow timing (state TTL, session TTL, collaborator call timeout)
- Monitoring and error reporting
"""

import base64
import logging
from typing import Final, Optional

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, PostgresDsn, RedisDsn, field_validator
from pydantic_settings import BaseSettings
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.atmd.account.orchestrator import AccountOrchestrator
from social.atmd.app.metrics import MetricsClient

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the atmd service.

    Environment variables map onto fields by name. Aliases are accepted for
    the connection strings so the usual `DATABASE_URL` / `REDIS_URL`
    conventions work too.
    """

    debug: bool = False
    """Enable debug logging of outgoing HTTP requests. Set with DEBUG."""

    http_port: int = Field(alias="port", default=5100)
    """HTTP port for the service to listen on. Set with PORT."""

    public_url: str = "http://localhost:5100"
    """
    External base URL of the service. Used for the OAuth client id, the
    Bluesky and GitHub redirect URIs. Set with PUBLIC_URL.
    """

    plc_hostname: str = "plc.directory"
    """PLC directory used for did:plc resolution. Set with PLC_HOSTNAME."""

    appview_hostname: str = "public.api.bsky.app"
    """Bluesky AppView serving public profiles. Set with APPVIEW_HOSTNAME."""

    sentry_dsn: Optional[str] = None
    """Sentry DSN. No error reporting when unset. Set with SENTRY_DSN."""

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """Redis connection string. Set with REDIS_DSN or REDIS_URL."""

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/atmd",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """PostgreSQL connection string. Set with PG_DSN or DATABASE_URL."""

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key encrypting stored GitHub tokens, base64 encoded.
    Set with ENCRYPTION_KEY. The default is random per process and only
    suitable for development.
    """

    github_client_id: str = ""
    """OAuth client id of the GitHub App. Set with GITHUB_CLIENT_ID."""

    github_client_secret: str = ""
    """OAuth client secret of the GitHub App. Set with GITHUB_CLIENT_SECRET."""

    github_app_name: str = ""
    """Slug of the GitHub App, used for installation URLs. Set with GITHUB_APP_NAME."""

    state_ttl: int = 3600
    """Seconds a correlation state stays valid. Set with STATE_TTL."""

    session_ttl: int = 2592000  # 30 days
    """Seconds a session stays valid. Set with SESSION_TTL."""

    call_timeout: Optional[float] = 10.0
    """
    Upper bound in seconds for each collaborator call made by the
    orchestrator. Set with CALL_TIMEOUT.
    """

    context_cookie_name: str = "atmd_ctx"
    """Name of the cookie carrying the opaque request context."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """StatsD/Telegraf host. An empty value disables metrics. Set with TELEGRAF_HOST."""

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """StatsD/Telegraf port. Set with TELEGRAF_PORT."""

    statsd_prefix: str = "atmd"
    """Prefix of the request metrics emitted by the server middleware."""

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Accept either a Fernet object or a base64 encoded key string.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @property
    def secure_cookies(self) -> bool:
        return self.public_url.startswith("https://")


SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

OrchestratorAppKey: Final = web.AppKey("orchestrator", AccountOrchestrator)
"""AppKey for the account orchestrator built from the resources above"""
