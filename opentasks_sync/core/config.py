"""Settings for opentasks-sync.

Values come from, in increasing priority: built-in defaults, a TOML file
(``<data_dir>/config.toml`` unless ``--config`` says otherwise) and
``OPENTASKS_*`` environment variables. Nested sections use ``__`` in
environment names, e.g. ``OPENTASKS_CALDAV__SERVER_URL``; each section also
reads its own prefix (``OPENTASKS_CALDAV_SERVER_URL``).
"""

import logging
import tomllib
from datetime import timedelta
from pathlib import Path

import tomli_w
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
USERNAME_PLACEHOLDER = "{username}"


class CalDAVConfig(BaseSettings):
    """Where the task collections live and how often to reconcile with them."""

    model_config = SettingsConfigDict(env_prefix="OPENTASKS_CALDAV_", case_sensitive=False)

    enabled: bool = True
    server_url: str | None = None
    username: str | None = None
    # Plain-text fallback; the keyring entry wins when both exist
    password: str | None = None

    # Root under which task collections are discovered. Servers disagree on
    # layout (Radicale: /<user>/, Baikal: /dav.php/calendars/<user>/, ...).
    collection_path: str = "/calendars/{username}/"

    sync_interval_minutes: int = 15
    debounce_seconds: float = 2.0
    tombstone_retention_hours: float = 24.0
    request_timeout_seconds: float = 30.0
    ssl_verify: bool = True
    task_extension: str = ".ics"

    @field_validator("server_url", mode="before")
    @classmethod
    def check_server_url(cls, v: str | None) -> str | None:
        if not v:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("CalDAV server URL needs an http:// or https:// scheme")
        return v.rstrip("/")

    @field_validator("collection_path", mode="before")
    @classmethod
    def absolute_collection_path(cls, v: str) -> str:
        path = (v or "/").strip()
        return path if path.startswith("/") else f"/{path}"

    @field_validator("task_extension", mode="before")
    @classmethod
    def dotted_extension(cls, v: str) -> str:
        ext = (v or ".ics").strip()
        return ext if ext.startswith(".") else f".{ext}"

    @field_validator(
        "sync_interval_minutes",
        "debounce_seconds",
        "tombstone_retention_hours",
        "request_timeout_seconds",
    )
    @classmethod
    def reject_negative(cls, v: float) -> float:
        """Intervals may be zero (disabled) but never negative."""
        if v < 0:
            raise ValueError("Timing settings must be zero or positive")
        return v

    @property
    def resolved_collection_path(self) -> str:
        """Collection root with the ``{username}`` placeholder substituted."""
        return self.collection_path.replace(USERNAME_PLACEHOLDER, self.username or "")

    @property
    def tombstone_retention(self) -> timedelta:
        return timedelta(hours=self.tombstone_retention_hours)

    @property
    def is_configured(self) -> bool:
        return bool(self.server_url and self.username)

    def get_password(self) -> str | None:
        """Return the CalDAV password, preferring the system keyring.

        Falls back to ``password`` from the config file or environment, and
        returns None when neither has one.
        """
        if self.username:
            from opentasks_sync.utils.credentials import CredentialStore

            stored = CredentialStore().get_caldav_password(self.username)
            if stored:
                logger.debug(f"CalDAV password for {self.username} taken from keyring")
                return stored

        if self.password:
            logger.debug("CalDAV password taken from configuration")
        return self.password or None


class GeneralConfig(BaseSettings):
    """Data directory and logging settings."""

    model_config = SettingsConfigDict(env_prefix="OPENTASKS_GENERAL_", case_sensitive=False)

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".opentasks-sync")
    log_file_name: str = "opentasks-sync.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Per-category level overrides, e.g. {"http": "WARNING"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Where this configuration was read from; never written back
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("data_dir", mode="before")
    @classmethod
    def absolute_data_dir(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Top-level settings: a ``general`` and a ``caldav`` section."""

    model_config = SettingsConfigDict(
        env_prefix="OPENTASKS_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    caldav: CalDAVConfig = Field(default_factory=CalDAVConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Build settings from a TOML file, or from defaults if it is missing."""
        if not config_path.is_file():
            logger.warning(f"No config file at {config_path}, using defaults")
            return cls()

        with config_path.open("rb") as fh:
            return cls(**tomllib.load(fh))

    def save_to_file(self, config_path: Path) -> None:
        """Write the settings as TOML, leaving out unset values."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("wb") as fh:
            tomli_w.dump(self.model_dump(mode="json", exclude_none=True), fh)
        logger.info(f"Wrote configuration to {config_path}")

    def ensure_data_dir(self) -> None:
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Using data directory {self.general.data_dir}")

    @property
    def tasks_db_path(self) -> Path:
        """SQLite file holding the local task store and sync state."""
        return self.general.data_dir / "tasks.db"

    @property
    def default_config_path(self) -> Path:
        return self.general.data_dir / "config.toml"

    @property
    def sync_target(self) -> str:
        """Key identifying this server/account in the sync state table."""
        return f"caldav:{self.caldav.username or ''}@{self.caldav.server_url or ''}"


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load settings and make sure the data directory exists.

    Args:
        config_path: Explicit TOML file. When omitted, ``config.toml`` in the
            data directory (itself settable through the environment) is used.
    """
    if config_path is None:
        config_path = AppConfig().default_config_path

    config = AppConfig.load_from_file(config_path)
    config.general.config_file = config_path
    config.ensure_data_dir()
    return config
