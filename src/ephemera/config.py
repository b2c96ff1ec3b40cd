"""Configuration settings for Ephemera."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EPHEMERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database (metadata index)
    database_url: str = "sqlite+aiosqlite:///ephemera.db"
    database_echo: bool = False

    # Blob storage: one file per entry id, flat directory
    storage_dir: Path = Path("blobs")

    # ── Global limits (0 = unlimited) ────────────────────────────────────────
    # Per-file max-uses / store-secs may be smaller but never larger.
    # Note that HEAD requests and interrupted downloads count as uses.
    max_uses: int = 0
    max_store_secs: int = 0

    # Maximum upload size in bytes
    max_blob_size: int = 0

    # Seconds between background sweeps of expired entries
    sweep_interval_secs: float = 60.0

    # HTTP
    host: str = "127.0.0.1"
    port: int = 8000
    # Return https:// links; overridden per request by X-HTTPS-Downstream
    https_downstream: bool = False
    # Value for Access-Control-Allow-Origin ("" disables CORS)
    allowed_origins: str = ""

    log_level: str = "INFO"


settings = Settings()
