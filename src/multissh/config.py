"""Manager settings and their on-disk persistence."""

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Get the config directory path."""
    config_dir = Path.home() / ".config" / "multissh"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@dataclass
class ManagerSettings:
    """Tunables for the session manager."""

    connect_timeout: float = 15.0  # seconds
    test_timeout: float = 10.0  # seconds, connection tests only
    max_reconnect_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 10000
    progress_interval: float = 1.0  # seconds between progress notifications
    keepalive_interval: int = 30  # seconds, 0 = disabled
    term_type: str = "xterm-256color"
    default_cols: int = 80
    default_rows: int = 24
    known_hosts: str | None = None  # None = ~/.ssh/known_hosts when present
    locale: str = "en"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "ManagerSettings":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class SettingsManager:
    """Manages manager settings."""

    def __init__(self):
        self.config_file = get_config_dir() / "settings.json"
        self._settings = ManagerSettings()
        self._load()

    def _load(self) -> None:
        """Load settings from config file."""
        if self.config_file.exists():
            try:
                data = json.loads(self.config_file.read_text())
                self._settings = ManagerSettings.from_dict(data)
            except (json.JSONDecodeError, TypeError, AttributeError):
                logger.warning("Ignoring unreadable settings file %s", self.config_file)
                self._settings = ManagerSettings()

    def _save(self) -> None:
        """Save settings to config file."""
        self.config_file.write_text(json.dumps(self._settings.to_dict(), indent=2))

    @property
    def settings(self) -> ManagerSettings:
        """Get current settings."""
        return self._settings

    def update(self, **kwargs) -> None:
        """Update settings."""
        for key, value in kwargs.items():
            if hasattr(self._settings, key):
                setattr(self._settings, key, value)
        self._save()
