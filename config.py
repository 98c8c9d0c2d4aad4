#!/usr/bin/env python3
"""
Configuration management for Pulse RSS.

This module centralizes configuration loading, validation and logging setup.
Values come from the process environment, an optional .env file next to the
code and an optional YAML secrets file, and are exposed through the global
``config`` instance.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, TypeVar
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

Number = TypeVar("Number", int, float)

_LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("azure", "azure.core", "azure.monitor.opentelemetry.exporter", "aiohttp.access")


def _level_from_env(env_var: str, default: int) -> int:
    return _LOG_LEVELS.get(environ.get(env_var, "").upper(), default)


def _setup_global_logger():
    """Configure the root logger once for the whole engine.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: "false" drops timestamps, e.g. under journald
        AZURE_LOG_LEVEL: Level for the Azure SDK and aiohttp access loggers (default WARNING)
    """
    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=_level_from_env("LOG_LEVEL", INFO),
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    quiet_level = _level_from_env("AZURE_LOG_LEVEL", WARNING)
    for name in _QUIET_LOGGERS:
        getLogger(name).setLevel(quiet_level)

    return getLogger("PulseRSS")

def get_logger(name: str):
    """Get a module logger under the shared "PulseRSS" hierarchy.

    Args:
        name: Subsystem name (e.g., "fetcher", "refresher", "scheduler")
    """
    return getLogger(f"PulseRSS.{name}")

logger = _setup_global_logger()

class Config:
    """Configuration manager for Pulse RSS.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml seed subscriptions

    Example feeds.yaml:
    ```yaml
    feeds:
      lwn:
        url: "https://lwn.net/headlines/rss"
      hn: "https://news.ycombinator.com/rss"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validated_number(self, env_var: str, default: Number, min_val: Number, cast: Callable[[str], Number]) -> Number:
        """Parse a numeric environment variable, falling back to ``default``
        when it is missing, malformed or below ``min_val``."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below the minimum {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._validated_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._validated_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "pulse.db")
        self.USER_AGENT = environ.get("USER_AGENT", "PulseRSS/1.0")

        # HTTP request configuration
        self.FEED_FETCH_TIMEOUT = self._validate_positive_int("FEED_FETCH_TIMEOUT", 15, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)

        # Refresh scheduling
        self.REFRESH_INTERVAL_MINUTES = self._validate_positive_int("REFRESH_INTERVAL_MINUTES", 20, 1)
        self.REFRESH_BACKOFF_MAX_HOURS = self._validate_positive_int("REFRESH_BACKOFF_MAX_HOURS", 12, 1)
        self.REFRESH_JITTER_MIN = self._validate_positive_float("REFRESH_JITTER_MIN", 0.10, 0.0)
        self.REFRESH_JITTER_MAX = self._validate_positive_float("REFRESH_JITTER_MAX", 0.20, 0.0)
        if self.REFRESH_JITTER_MAX < self.REFRESH_JITTER_MIN or self.REFRESH_JITTER_MAX >= 1.0:
            logger.warning(
                "Invalid jitter range %s-%s, using defaults 0.10-0.20",
                self.REFRESH_JITTER_MIN,
                self.REFRESH_JITTER_MAX,
            )
            self.REFRESH_JITTER_MIN = 0.10
            self.REFRESH_JITTER_MAX = 0.20
        self.REFRESH_LOOP_INTERVAL_SECONDS = self._validate_positive_int("REFRESH_LOOP_INTERVAL_SECONDS", 30, 1)
        self.REFRESH_BATCH_SIZE = self._validate_positive_int("REFRESH_BATCH_SIZE", 5, 1)

        # Retention
        self.MAX_ITEMS_PER_FEED = self._validate_positive_int("MAX_ITEMS_PER_FEED", 200, 1)
        self.MAX_ERROR_LENGTH = self._validate_positive_int("MAX_ERROR_LENGTH", 300, 10)
        self.READ_RETENTION_MINUTES = self._validate_positive_int("READ_RETENTION_MINUTES", 30, 1)
        self.CLEANUP_INTERVAL_MINUTES = self._validate_positive_int("CLEANUP_INTERVAL_MINUTES", 10, 1)
        self.TOMBSTONE_RETENTION_DAYS = self._validate_positive_int("TOMBSTONE_RETENTION_DAYS", 30, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under ``environment``
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except (yaml.YAMLError, OSError) as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES (name -> url) from feeds.yaml."""
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            self.FEED_SOURCES = {}
            return

        new_sources: Dict[str, str] = {}
        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and feed_cfg.get('url'):
                new_sources[feed_slug] = str(feed_cfg['url'])
            elif isinstance(feed_cfg, str) and feed_cfg.strip():
                new_sources[feed_slug] = feed_cfg
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} seed feeds from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "user_agent": self.USER_AGENT,
            "feed_fetch_timeout": self.FEED_FETCH_TIMEOUT,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "refresh_backoff_max_hours": self.REFRESH_BACKOFF_MAX_HOURS,
            "refresh_jitter": f"{self.REFRESH_JITTER_MIN:.2f}-{self.REFRESH_JITTER_MAX:.2f}",
            "refresh_loop_interval_seconds": self.REFRESH_LOOP_INTERVAL_SECONDS,
            "refresh_batch_size": self.REFRESH_BATCH_SIZE,
            "max_items_per_feed": self.MAX_ITEMS_PER_FEED,
            "read_retention_minutes": self.READ_RETENTION_MINUTES,
            "cleanup_interval_minutes": self.CLEANUP_INTERVAL_MINUTES,
            "tombstone_retention_days": self.TOMBSTONE_RETENTION_DAYS,
            "seed_feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
