"""Configuration management for the time tracker sync client."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .utils import get_data_directory

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "server_url": "",
    "auth_token": "",  # nosec B105 - Bearer token for sync authentication
    "platform": "desktop",
    "sync_interval": 30,  # seconds
    "auto_sync": True,
    "request_timeout": 30,
    "health_timeout": 5,
    "max_retries": 3,
    "queue_max_size": 100,
    "queue_trim_size": 50,
    "conflict_strategy": "latest_timestamp",
    "conflict_tie_break": "server",
    "encryption_key": "",
    "encryption_passphrase": "",
    "verbose_logging": False,
}

INT_KEYS = (
    "sync_interval",
    "request_timeout",
    "health_timeout",
    "max_retries",
    "queue_max_size",
    "queue_trim_size",
)
BOOL_KEYS = ("auto_sync", "verbose_logging")


class Config:
    """Configuration manager for the sync client."""

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = Path.home() / ".config" / "TimeTracker"

        self.config_file = self.config_dir / "settings.json"
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or create default."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    config = json.load(f)
                # Merge with defaults to ensure all keys exist
                merged_config = DEFAULT_CONFIG.copy()
                merged_config.update(config)
                return merged_config
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Could not load config file, using defaults: %s", e)

        return DEFAULT_CONFIG.copy()

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2, ensure_ascii=False)
        except IOError as e:
            logger.warning("Could not save config file: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._config[key] = value

    def update(self, config_dict: Dict[str, Any]) -> None:
        self._config.update(config_dict)

    def reset_to_defaults(self) -> None:
        self._config = DEFAULT_CONFIG.copy()

    def get_all(self) -> Dict[str, Any]:
        return self._config.copy()

    @property
    def server_url(self) -> str:
        """Get sync server base URL."""
        return self.get("server_url", "")

    @server_url.setter
    def server_url(self, value: str) -> None:
        self.set("server_url", value)

    @property
    def sync_interval(self) -> int:
        """Get periodic sync interval in seconds."""
        return self.get("sync_interval", 30)

    @sync_interval.setter
    def sync_interval(self, value: int) -> None:
        self.set("sync_interval", value)

    @property
    def auto_sync(self) -> bool:
        return self.get("auto_sync", True)

    @property
    def verbose_logging(self) -> bool:
        return self.get("verbose_logging", False)

    @property
    def data_dir(self) -> Path:
        """Get data directory path."""
        data_dir = self.get("data_dir")
        if data_dir:
            return Path(data_dir)
        return get_data_directory()


def load_config_from_env() -> Dict[str, Any]:
    """Load configuration from ``TIME_TRACKER_*`` environment variables."""
    env_config: Dict[str, Any] = {}

    env_mappings = {
        "TIME_TRACKER_DATA_DIR": "data_dir",
        "TIME_TRACKER_SERVER_URL": "server_url",
        "TIME_TRACKER_AUTH_TOKEN": "auth_token",  # nosec B105
        "TIME_TRACKER_PLATFORM": "platform",
        "TIME_TRACKER_SYNC_INTERVAL": "sync_interval",
        "TIME_TRACKER_AUTO_SYNC": "auto_sync",
        "TIME_TRACKER_REQUEST_TIMEOUT": "request_timeout",
        "TIME_TRACKER_MAX_RETRIES": "max_retries",
        "TIME_TRACKER_CONFLICT_STRATEGY": "conflict_strategy",
        "TIME_TRACKER_TIE_BREAK": "conflict_tie_break",
        "TIME_TRACKER_ENCRYPTION_KEY": "encryption_key",
        "TIME_TRACKER_ENCRYPTION_PASSPHRASE": "encryption_passphrase",
        "TIME_TRACKER_VERBOSE": "verbose_logging",
    }

    for env_var, config_key in env_mappings.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        if config_key in INT_KEYS:
            try:
                env_config[config_key] = int(value)
            except ValueError:
                logger.warning("Invalid integer value for %s: %s", env_var, value)
        elif config_key in BOOL_KEYS:
            env_config[config_key] = value.lower() in ("true", "1", "yes", "on")
        else:
            env_config[config_key] = value

    return env_config


# Global config instance
_global_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration instance with environment overrides applied."""
    global _global_config
    if _global_config is None:
        _global_config = Config()
        env_config = load_config_from_env()
        if env_config:
            _global_config.update(env_config)
    return _global_config


def reload_config() -> Config:
    global _global_config
    _global_config = None
    return get_config()
