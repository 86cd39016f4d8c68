from __future__ import annotations

import fcntl
from pathlib import Path
from typing import Any, Dict

import yaml

from rolekeeper.util.logger import get_logger

logger = get_logger("app_configuration")

DEFAULT_CONFIG_PATH = Path("./config/app_config.yml")


class AppConfig:
    """File-lock based accessor around the YAML application configuration.

    Missing files, missing sections and missing keys all fall back to the
    defaults below, so an empty config yields a working setup.
    """

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH) -> None:
        self.config_path = Path(config_path)
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = yaml.safe_load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            logger.warning("[APP CONFIGURATION] Config file %s not found, using defaults.", self.config_path)
            return {}
        except (OSError, yaml.YAMLError) as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
            return {}

        if not isinstance(data, dict):
            if data is not None:
                logger.error("[APP CONFIGURATION] Config %s is not a mapping, using defaults.", self.config_path)
            return {}
        return data

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Re-read the YAML file and return the loaded mapping (empty on error)."""
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    # --------------------------
    # Database
    # --------------------------
    @property
    def database_path(self) -> Path:
        """SQLite file; relative paths are resolved against the project directory (the parent of ``config/``)."""
        path = Path(str(self._section("database").get("path", "./data/rolekeeper.db")))
        if path.is_absolute():
            return path
        return (self.config_path.resolve().parent.parent / path).resolve()

    @property
    def max_reconnect_attempts(self) -> int:
        return int(self._section("database").get("max_reconnect_attempts", 5))

    @property
    def reconnect_delay(self) -> float:
        return float(self._section("database").get("reconnect_delay_seconds", 2.0))

    @property
    def query_timeout(self) -> float:
        return float(self._section("database").get("query_timeout_seconds", 10.0))

    @property
    def slow_query_threshold_ms(self) -> float:
        return float(self._section("database").get("slow_query_threshold_ms", 100.0))

    # --------------------------
    # Cache / scheduler
    # --------------------------
    @property
    def cache_ttl(self) -> float:
        """Cache entry lifetime in seconds; 0 keeps entries until the next write."""
        return float(self._section("cache").get("ttl_seconds", 0))

    @property
    def poll_interval(self) -> float:
        return float(self._section("scheduler").get("poll_interval_seconds", 30.0))

    @property
    def max_removal_attempts(self) -> int:
        """How many ticks a failing temporary-role removal is retried before it is given up."""
        return int(self._section("scheduler").get("max_removal_attempts", 10))

    @property
    def report_completions(self) -> bool:
        """Post a summary to each guild's log channel after scheduled and recurring runs."""
        return bool(self._section("scheduler").get("report_completions", True))
