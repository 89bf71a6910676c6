"""Application settings and configuration.

This module defines all configuration options for the Chorus sync engine.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables.

    Every option can be overridden via a ``CHORUS_SYNC_*`` environment
    variable or a ``.env`` file in the working directory.
    """

    # Application metadata
    app_name: str = Field(default="Chorus Sync", alias="CHORUS_SYNC_APP_NAME")
    app_version: str = Field(default="0.1.0", alias="CHORUS_SYNC_APP_VERSION")
    debug: bool = Field(default=False, alias="CHORUS_SYNC_DEBUG")
    log_level: str = Field(default="INFO", alias="CHORUS_SYNC_LOG_LEVEL")

    # Local cache
    database_url: str = Field(
        default="sqlite:///./chorus_sync.db",
        alias="CHORUS_SYNC_DATABASE_URL",
    )
    sql_debug: bool = Field(default=False, alias="CHORUS_SYNC_SQL_DEBUG")

    # Transport
    content_topic: str = Field(
        default="/chorus/1/forum/json",
        alias="CHORUS_SYNC_CONTENT_TOPIC",
    )
    publish_timeout_seconds: float = Field(
        default=10.0,
        alias="CHORUS_SYNC_PUBLISH_TIMEOUT_SECONDS",
    )
    reconnect_delay_seconds: float = Field(
        default=2.0,
        alias="CHORUS_SYNC_RECONNECT_DELAY_SECONDS",
    )

    # HTTP relay transport
    relay_enabled: bool = Field(default=False, alias="CHORUS_SYNC_RELAY_ENABLED")
    relay_base_url: str | None = Field(default=None, alias="CHORUS_SYNC_RELAY_BASE_URL")
    relay_node_id: str = Field(default="sync-local", alias="CHORUS_SYNC_RELAY_NODE_ID")
    relay_shared_secret: str | None = Field(
        default=None,
        alias="CHORUS_SYNC_RELAY_SHARED_SECRET",
    )
    relay_audience: str = Field(default="chorus-relay", alias="CHORUS_SYNC_RELAY_JWT_AUD")
    relay_token_ttl_seconds: int = Field(
        default=300,
        alias="CHORUS_SYNC_RELAY_TOKEN_TTL_SECONDS",
    )
    relay_http_timeout_seconds: float = Field(
        default=10.0,
        alias="CHORUS_SYNC_RELAY_HTTP_TIMEOUT_SECONDS",
    )
    relay_pull_interval_seconds: float = Field(
        default=2.0,
        alias="CHORUS_SYNC_RELAY_PULL_INTERVAL_SECONDS",
    )

    # Wallet and delegation
    wallet_sign_timeout_seconds: float = Field(
        default=60.0,
        alias="CHORUS_SYNC_WALLET_SIGN_TIMEOUT_SECONDS",
    )

    # Outbox retry policy
    outbox_base_backoff_seconds: float = Field(
        default=1.0,
        alias="CHORUS_SYNC_OUTBOX_BASE_BACKOFF_SECONDS",
    )
    outbox_max_backoff_seconds: float = Field(
        default=60.0,
        alias="CHORUS_SYNC_OUTBOX_MAX_BACKOFF_SECONDS",
    )
    outbox_jitter_ratio: float = Field(default=0.2, alias="CHORUS_SYNC_OUTBOX_JITTER_RATIO")
    outbox_max_attempts: int = Field(default=5, alias="CHORUS_SYNC_OUTBOX_MAX_ATTEMPTS")
    outbox_tick_seconds: float = Field(default=0.5, alias="CHORUS_SYNC_OUTBOX_TICK_SECONDS")

    # Gap detection and recovery
    recovery_cooldown_seconds: float = Field(
        default=5.0,
        alias="CHORUS_SYNC_RECOVERY_COOLDOWN_SECONDS",
    )
    recovery_horizon_seconds: float = Field(
        default=300.0,
        alias="CHORUS_SYNC_RECOVERY_HORIZON_SECONDS",
    )
    recovery_lookback_seconds: float = Field(
        default=7 * 24 * 3600.0,
        alias="CHORUS_SYNC_RECOVERY_LOOKBACK_SECONDS",
    )
    recovery_max_inflight: int = Field(default=8, alias="CHORUS_SYNC_RECOVERY_MAX_INFLIGHT")
    recovery_sweep_seconds: float = Field(
        default=10.0,
        alias="CHORUS_SYNC_RECOVERY_SWEEP_SECONDS",
    )

    # Relevance scoring
    relevance_decay_rate: float = Field(default=0.1, alias="CHORUS_SYNC_RELEVANCE_DECAY_RATE")
    relevance_moderation_penalty: float = Field(
        default=0.05,
        alias="CHORUS_SYNC_RELEVANCE_MODERATION_PENALTY",
    )

    # Permission thresholds, expressed as verification tier names
    min_tier_to_post: str = Field(default="wallet-unconnected", alias="CHORUS_SYNC_MIN_TIER_POST")
    min_tier_to_vote: str = Field(default="wallet-unconnected", alias="CHORUS_SYNC_MIN_TIER_VOTE")
    min_tier_to_create_cell: str = Field(
        default="owner-verified",
        alias="CHORUS_SYNC_MIN_TIER_CREATE_CELL",
    )

    # Local signing identity
    dev_wallet_kind: str | None = Field(default=None, alias="CHORUS_SYNC_DEV_WALLET")
    anonymous_session: bool = Field(default=False, alias="CHORUS_SYNC_ANONYMOUS_SESSION")

    # Identity lookups
    identity_cache_ttl_seconds: float = Field(
        default=300.0,
        alias="CHORUS_SYNC_IDENTITY_CACHE_TTL_SECONDS",
    )

    # CORS configuration for the local node API
    cors_origins: list[str] = Field(default=["*"], alias="CHORUS_SYNC_CORS_ORIGINS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def recovery_thresholds(self) -> dict[str, float]:
        """Return recovery timing knobs as a convenience dictionary."""
        return {
            "cooldown_seconds": self.recovery_cooldown_seconds,
            "horizon_seconds": self.recovery_horizon_seconds,
            "lookback_seconds": self.recovery_lookback_seconds,
        }


settings = Settings()
