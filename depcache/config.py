"""Configuration settings for depcache.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TARGET_PLATFORM = "x86_64-unknown-linux-musl"


def _default_cache_dir() -> Path:
    """Return the default dependency cache directory."""
    return Path.home() / ".cache" / "depcache" / "bundles"


def _default_output_dir() -> Path:
    """Return the default build output directory."""
    return Path.home() / ".local" / "share" / "depcache" / "outputs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "depcache" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the DEPCACHE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the filesystem dependency cache",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Root directory for packaged build outputs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build records",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Directory for intermediate build state (system temp if not set)",
    )

    # Remote cache
    cache_url: str | None = Field(
        default=None,
        description="Base URL of an HTTP cache store (filesystem cache if not set)",
    )
    cache_timeout: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Timeout for a single cache store request",
    )

    # Build defaults
    target_platform: str = Field(
        default=DEFAULT_TARGET_PLATFORM,
        min_length=1,
        description="Default target platform identifier",
    )
    build_profile: str = Field(
        default="release",
        min_length=1,
        description="Default build profile",
    )
    use_recipe_lock: bool = Field(
        default=True,
        description="Hold a per-recipe lease so concurrent misses compile once",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    lock_timeout: float = Field(
        default=600.0,
        ge=0,
        description="Timeout for acquiring a per-recipe lease",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single toolchain invocation",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_TARGET_PLATFORM",
    "Settings",
    "get_settings",
    "print_settings_json",
]
