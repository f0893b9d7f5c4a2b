"""Configuration settings for imagebuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_db_url() -> str:
    """Return the default run journal URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "imagebuild" / "runs.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the IMGBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMGBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    builds_dir: Path = Field(
        default=Path("builds"),
        description="Root of the build history",
    )
    cache_dir: Path = Field(
        default=Path("cache"),
        description="Root for the previous-compose cache and tool logs",
    )
    config_dir: Path = Field(
        default=Path("src/config"),
        description="Directory holding the image definition (usually a git checkout)",
    )
    image_definition: str = Field(
        default="image.yaml",
        description="Image definition file name inside config_dir",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Run journal database URL",
    )

    # External tools
    compose_command: list[str] = Field(
        default_factory=lambda: ["compose-tree"],
        description="Command that composes the package tree",
    )
    image_command: list[str] = Field(
        default_factory=lambda: ["create-disk-image"],
        description="Command that generates a disk image from a tree",
    )
    cleanup_command: list[str] | None = Field(
        default=None,
        description="Optional command that strips installer artifacts from an image",
    )
    archive_url: str | None = Field(
        default=None,
        description="Base URL of the archival build system",
    )
    archive_token: str | None = Field(
        default=None,
        description="Bearer token for the archival build system",
    )

    # Retention
    retention_keep: int = Field(
        default=3,
        ge=1,
        description="Number of builds kept by pruning",
    )
    retention_max_age_days: int | None = Field(
        default=None,
        ge=1,
        description="Prune builds older than this many days (disabled if not set)",
    )

    # Operational modes
    lock_blocking: bool = Field(
        default=False,
        description="Wait for the history lock instead of failing fast",
    )
    auto_recover: bool = Field(
        default=True,
        description="Recover interrupted commits automatically on startup",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_images: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Maximum image variants generated in parallel",
    )

    # Timeouts (in seconds)
    compose_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for the compose step",
    )
    image_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each image variant",
    )
    upload_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for archival uploads",
    )

    @property
    def image_definition_path(self) -> Path:
        """Full path of the image definition file."""
        return self.config_dir / self.image_definition


def get_settings() -> Settings:
    """Get the application settings singleton.

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
    return settings.model_dump_json(indent=2, exclude={"archive_token"})


__all__ = ["Settings", "get_settings", "print_settings_json"]
