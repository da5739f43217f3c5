"""
Configuration Module for the PokeAround AT Protocol service

This module defines the configuration system using Pydantic for settings validation and
dependency injection through aiohttp AppKeys.

The Settings class is loaded from environment variables with defaults suitable for
development environments. All application components access settings and shared
resources through typed AppKeys.

Key configuration areas include:
- OAuth client identity (client id, redirect URI, scope)
- Identity resolution (PLC directory, handle resolver)
- Database connection and at-rest encryption
- Link sync worker schedule and service account
- Monitoring and error reporting
"""

import asyncio
import base64
from typing import Final, Optional
import logging
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
)
from pydantic_settings import BaseSettings
from aiohttp import web
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from aiohttp import ClientSession

from space.pokearound.atp.app.metrics import MetricsClient
from space.pokearound.atp.model.health import HealthGauge


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables are mapped to settings fields automatically, with aliases
    where a more common name exists. For example, the database connection string can
    be set with either PG_DSN or DATABASE_URL.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and development features.
    Set with DEBUG=true environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the operational server to listen on.
    Set with PORT environment variable.
    """

    external_hostname: str = "localhost:5100"
    """
    Public hostname for the service, used to derive the default redirect URI.
    Set with EXTERNAL_HOSTNAME environment variable.
    """

    # OAuth client settings
    client_id: Optional[str] = None
    """
    OAuth client id, which for AT Protocol is the URL of the client metadata document.
    Required to start a login or refresh a session.
    Set with CLIENT_ID environment variable.
    """

    redirect_uri: Optional[str] = None
    """
    Callback URL registered in the client metadata.
    Defaults to https://{external_hostname}/auth/callback.
    Set with REDIRECT_URI environment variable.
    """

    oauth_scope: str = "atproto transition:generic"
    """
    Scope requested in the pushed authorization request.
    Set with OAUTH_SCOPE environment variable.
    """

    # Identity resolution
    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    handle_resolver: str = "https://bsky.social"
    """
    Server used for com.atproto.identity.resolveHandle lookups.
    Set with HANDLE_RESOLVER environment variable.
    """

    discovery_timeout: float = 10.0
    """Timeout in seconds for identity and metadata fetches."""

    request_timeout: float = 15.0
    """Timeout in seconds for PAR, token and PDS requests."""

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database connection
    pg_dsn: str = Field(
        "postgresql+asyncpg://postgres:password@db/pokearound",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )
    """
    Database connection string.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Security and cryptography settings
    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric encryption key for tokens and DPoP keys stored in the database.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    # Worker identification
    worker_id: str = "worker"
    """
    Identifier for this worker instance, used as a tag on metrics.
    Set with WORKER_ID environment variable.
    """

    # Link sync worker
    sync_enabled: bool = False
    """
    Publish qualifying links to the service account's repository.
    Set with SYNC_ENABLED environment variable.
    """

    sync_min_score: int = 50
    """Minimum link score for a link to be published."""

    sync_batch_size: int = 20
    """Maximum number of links published per cycle."""

    sync_interval: float = 60.0
    """Seconds between sync cycles."""

    sync_initial_delay: float = 5.0
    """Seconds to wait after startup before the first sync cycle."""

    service_did: Optional[str] = None
    """
    DID of the service account whose repository links are published to. The account
    must have a stored session from a completed OAuth login.
    Set with SERVICE_DID environment variable.
    """

    # Monitoring and observability settings
    metrics_backend: str = "telegraf"
    """
    Metrics backend, either "telegraf" or "none".
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "pokearound"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}

    @property
    def oauth_redirect_uri(self) -> str:
        if self.redirect_uri:
            return self.redirect_uri
        return f"https://{self.external_hostname}/auth/callback"

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Validate and process the encryption_key setting.

        This validator accepts either:
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):  # Already a Fernet instance, return it
            return v
        elif isinstance(v, str):  # Decode from a base64-encoded string
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


# Application context keys for dependency injection
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

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

SyncTaskAppKey: Final = web.AppKey("sync_task", asyncio.Task[None])
"""AppKey for the background task that publishes links"""
