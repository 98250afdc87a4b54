"""
Engine configuration.

Settings are read from environment variables prefixed with NOTIFY_ (and from a
.env file when present). Every tunable the engine uses lives here so components
receive plain values at construction time instead of reading the environment.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError


class Settings(BaseSettings):
    """
    Notification engine settings.

    Environment Variables:
        NOTIFY_DATA_DIR: Directory with JSON fixtures used to seed the data store
        NOTIFY_WEBPUSH_ENABLED: Deliver remote push through pywebpush
        NOTIFY_VAPID_PUBLIC_KEY / NOTIFY_VAPID_PRIVATE_KEY / NOTIFY_VAPID_SUBJECT
        NOTIFY_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_",
        env_file=".env",
        extra="ignore",
    )

    # Backend
    data_dir: Optional[Path] = Field(default=None, description="JSON fixture directory")

    # Remote push
    webpush_enabled: bool = False
    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_subject: str = "mailto:notifications@example.com"
    push_ttl_seconds: int = 86400

    # Local cache
    category_cache_ttl_seconds: float = Field(default=300.0, gt=0)

    # Delivery
    banner_duration_seconds: float = Field(default=5.0, gt=0)

    # History
    history_retention_days: int = Field(default=30, ge=1)

    # Concurrency guard
    native_locks: bool = True
    lock_max_retries: int = Field(default=10, ge=0)
    lock_retry_base_delay: float = Field(default=0.05, gt=0)
    lock_retry_max_delay: float = Field(default=1.0, gt=0)

    # Reservation expiry sweep. Alerts with at most reservation_urgent_minutes
    # left use the urgent wording, so with a warning window inside the urgent
    # threshold every swept alert is urgent. Widen the window to send the
    # regular reminder first.
    reservation_sweep_interval_seconds: float = Field(default=60.0, gt=0)
    reservation_warning_minutes: int = Field(default=15, ge=1)
    reservation_urgent_minutes: int = Field(default=30, ge=1)

    log_level: str = "INFO"

    def validate_for_startup(self) -> None:
        """
        Check the settings that must hold before the engine starts.

        Raises:
            ConfigurationError: If web push is enabled without VAPID credentials,
                or the fixture directory is configured but does not exist.
        """
        if self.webpush_enabled:
            missing = [
                name for name, value in (
                    ("NOTIFY_VAPID_PUBLIC_KEY", self.vapid_public_key),
                    ("NOTIFY_VAPID_PRIVATE_KEY", self.vapid_private_key),
                )
                if not value
            ]
            if missing:
                raise ConfigurationError(
                    f"Web push is enabled but {', '.join(missing)} is not set"
                )
        if self.data_dir is not None and not Path(self.data_dir).is_dir():
            raise ConfigurationError(f"Data directory does not exist: {self.data_dir}")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings(settings: Optional[Settings] = None) -> Settings:
    """Replace the settings singleton (useful for testing)."""
    global _settings
    _settings = settings or Settings()
    return _settings
