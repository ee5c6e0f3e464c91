#!/usr/bin/env python3
"""
Configuration management for the notification feed updater.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Line buffering is unavailable on some replaced streams (e.g. under test capture)
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # Keep chatty client libraries quiet unless asked otherwise
    for name in ("aiohttp.access", "azure", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(level_map.get(environ.get("LIBRARY_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("NotificationFeeds")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "updater", "store", "addon")

    Returns:
        A logger named "NotificationFeeds.{name}"
    """
    return getLogger(f"NotificationFeeds.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_CINEMETA_URL = "https://v3-cinemeta.strem.io"
DEFAULT_CHANNELS_URL = "https://v3-channels.strem.io"
DEFAULT_METAHUB_URL = "https://images.metahub.space"

SECONDS_PER_MINUTE = 60
SECONDS_PER_DAY = 24 * 60 * 60

# 2019-06-01T00:00:00Z
DEFAULT_INTRO_PUBLISHED = 1559347200


class Config:
    """Configuration manager for the feed updater.

    Values are loaded from, in increasing priority:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The feed list and retention thresholds come from feeds.yaml.

    Example feeds.yaml:
    ```yaml
    feeds:
      - intro
      - tt0944947
      - yt_id:UCrDkAvwZum-UTjHmzDI2iIw
    thresholds:
      retention_days: 30
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
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

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Store configuration
        self.STORE_BACKEND = environ.get("STORE_BACKEND", "sqlite").strip().lower()
        if self.STORE_BACKEND not in ("sqlite", "redis"):
            logger.warning(f"Unknown STORE_BACKEND '{self.STORE_BACKEND}', using sqlite")
            self.STORE_BACKEND = "sqlite"
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "notifications.db")
        self.REDIS_URL = environ.get("REDIS_URL", "redis://localhost:6379/0")
        self.REDIS_KEY_PREFIX = environ.get("REDIS_KEY_PREFIX", "")

        # Update cadence and concurrency
        self.QUEUE_CONCURRENCY = self._validate_positive_int("QUEUE_CONCURRENCY", 10, 1)
        self.CACHE_BREAK_MINUTES = self._validate_positive_int("CACHE_BREAK_MINUTES", 10, 1)
        self.UPDATE_INTERVAL_MINUTES = self._validate_positive_int("UPDATE_INTERVAL_MINUTES", 60, 1)

        # How many of the most recent videos the addon returns per feed
        self.SERIES_WINDOW_SIZE = self._validate_positive_int("SERIES_WINDOW_SIZE", 3, 1)
        self.CHANNEL_WINDOW_SIZE = self._validate_positive_int("CHANNEL_WINDOW_SIZE", 8, 1)

        # Videos without streams only notify once they have been out this long
        self.EPISODE_OUT_FOR_HOURS = self._validate_positive_int("EPISODE_OUT_FOR_HOURS", 6, 0)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.USER_AGENT = environ.get("USER_AGENT", "NotificationFeeds/1.0")

        # Upstream addons
        self.CINEMETA_URL = environ.get("CINEMETA_URL", DEFAULT_CINEMETA_URL).rstrip("/")
        self.CHANNELS_URL = environ.get("CHANNELS_URL", DEFAULT_CHANNELS_URL).rstrip("/")
        self.METAHUB_URL = environ.get("METAHUB_URL", DEFAULT_METAHUB_URL).rstrip("/")

        # Intro feed
        self.INTRO_FEED_ID = environ.get("INTRO_FEED_ID", "intro")
        self.INTRO_PUBLISHED = DEFAULT_INTRO_PUBLISHED
        self.INTRO_NOTIFICATION = {
            "_id": "intro_guide",
            "item_id": "intro_guide",
            "item_type": "intro",
            "item_name": "Stremio",
            "name": "Stremio",
            "title": "Welcome! Learn how to get the most out of your notifications",
            "type": "notification",
            "url": environ.get("INTRO_GUIDE_URL", "https://www.stremio.com/notifications-guide"),
            "published": DEFAULT_INTRO_PUBLISHED,
        }

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

        self.RETENTION_DAYS = self._validate_positive_int("RETENTION_DAYS", 30, 1)

    @property
    def RETENTION_WINDOW(self) -> int:
        """Notification lifetime in seconds."""
        return self.RETENTION_DAYS * SECONDS_PER_DAY

    @property
    def CACHE_BREAK_PERIOD(self) -> int:
        """Cache-break period in seconds."""
        return self.CACHE_BREAK_MINUTES * SECONDS_PER_MINUTE

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment` are accepted:
        ```yaml
        REDIS_URL: "redis://:password@redis.internal:6379/0"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

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
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
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
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_IDS and thresholds from feeds.yaml.

        Any failure results in an empty feed list and default thresholds.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_IDS: List[str] = []
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds')
        if isinstance(feeds_section, list):
            for entry in feeds_section:
                feed_id = entry.get('id') if isinstance(entry, dict) else entry
                if isinstance(feed_id, str) and feed_id.strip():
                    self.FEED_IDS.append(feed_id.strip())
                else:
                    logger.warning(f"Skipping invalid feed entry in {feeds_path}: {entry}")
        elif feeds_section is not None:
            logger.warning(f"'feeds' in {feeds_path} must be a list of feed ids")
        logger.info(f"Loaded {len(self.FEED_IDS)} feeds from {feeds_path}")

        thresholds = config_data.get('thresholds')
        if not isinstance(thresholds, dict):
            return
        raw = thresholds.get('retention_days')
        if raw is not None:
            try:
                value = int(str(raw).strip())
                if value >= 1:
                    self.RETENTION_DAYS = value
                else:
                    logger.warning(f"retention_days must be >=1; keeping {self.RETENTION_DAYS} (got {raw})")
            except ValueError:
                logger.warning(f"Invalid retention_days value '{raw}' in {feeds_path}; keeping {self.RETENTION_DAYS}")
        logger.info(f"Loaded thresholds: RETENTION_DAYS={self.RETENTION_DAYS}")

    def reload_feed_sources(self):
        """Reload the feed list from configuration file."""
        logger.info("Reloading feed configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "store_backend": self.STORE_BACKEND,
            "database_path": self.DATABASE_PATH,
            "retention_days": self.RETENTION_DAYS,
            "cache_break_minutes": self.CACHE_BREAK_MINUTES,
            "queue_concurrency": self.QUEUE_CONCURRENCY,
            "series_window_size": self.SERIES_WINDOW_SIZE,
            "channel_window_size": self.CHANNEL_WINDOW_SIZE,
            "update_interval_minutes": self.UPDATE_INTERVAL_MINUTES,
            "feed_count": len(self.FEED_IDS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
