"""
Application configuration loaded from environment variables.

Uses pydantic-settings for type-safe env var parsing with automatic
.env file loading. Both the API server and the viewer read from the
same Settings object; viewer fields are grouped at the bottom.

To extend: add new fields here and document them in .env.example.
See https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ─── Core ──────────────────────────────────────────────────────
    environment: str = "development"
    debug: bool = False

    # ─── MongoDB ───────────────────────────────────────────────────
    # Local dev default matches a plain `mongod` on the default port.
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_name: str = "crisisdb"
    mongo_collection: str = "crises"

    # ─── CORS ──────────────────────────────────────────────────────
    # Comma-separated allowed origins. "*" lets any viewer connect.
    cors_origins_str: str = "*"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins_str.split(",") if o.strip()]

    # ─── Change feed (/events) ─────────────────────────────────────
    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 20.0
    # Records ingested shortly before a viewer connects are still delivered.
    lookback_seconds: float = 60.0
    feed_batch_limit: int = 100

    # ─── Snapshot + stats ──────────────────────────────────────────
    snapshot_default_limit: int = 500
    snapshot_max_limit: int = 2000
    stats_top_countries: int = 20

    # ─── Retention ─────────────────────────────────────────────────
    retention_days: int = 5
    cleanup_rate_limit: str = "5/minute"

    # ─── Viewer ────────────────────────────────────────────────────
    api_base: str = "http://localhost:8000"
    viewer_buffer_size: int = 1500
    stats_refresh_seconds: float = 30.0
    reconnect_base_delay_ms: int = 1000
    reconnect_max_attempt: int = 6

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Don't fail on unknown env vars
    )


# Module-level singleton — import this everywhere instead of instantiating Settings()
settings = Settings()
