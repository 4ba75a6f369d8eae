#!/usr/bin/env python3
"""
Configuration management for Feed Importer.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file, and the feeds.yaml
file that lists the feeds to synchronize. Feed entries are re-read on every
call to ``list_feeds()`` so each sync run sees the current configuration.
"""

from os import environ, path, access, R_OK
from typing import Any, FrozenSet, Iterable, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from feed_types import FeedConfig, DEFAULT_MAX_ITEMS, DEFAULT_POLL_INTERVAL_MINUTES


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

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

    # Line-buffer output so scheduled runs show up promptly in container logs
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # aiohttp access noise is rarely useful below WARNING
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedImporter")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "synchronizer", "scheduler")

    Returns:
        A logger named "FeedImporter.{name}"
    """
    return getLogger(f"FeedImporter.{name}")


logger = _setup_global_logger()


def _coerce_positive_int(value: Any, default: int, field_name: str, label: str) -> int:
    """Parse a positive integer feed setting, falling back to ``default``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning(f"Invalid {field_name} '{value}' for feed {label}; using default {default}")
        return default
    if parsed < 1:
        logger.warning(f"{field_name} must be >= 1 for feed {label}; using default {default} (got {value})")
        return default
    return parsed


def _coerce_tags(value: Any) -> FrozenSet[str]:
    """Accept a list of tags or a comma separated string."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        items = [value]
    return frozenset(str(tag).strip() for tag in items if str(tag).strip())


def parse_feed_configs(config_data: Any, default_author: str) -> List[FeedConfig]:
    """Turn the parsed feeds.yaml document into a list of FeedConfig records.

    Accepts ``feeds`` as either a mapping of slug -> settings or a list of
    settings. Entries with an empty URL are kept (with ``url=""``) so the
    synchronizer can report them; repeated URLs keep the first entry only.
    """
    if not isinstance(config_data, dict):
        return []

    defaults = config_data.get('defaults') if isinstance(config_data.get('defaults'), dict) else {}
    author_default = str(defaults.get('author') or default_author)
    max_items_default = _coerce_positive_int(defaults.get('max_items'), DEFAULT_MAX_ITEMS, 'max_items', 'defaults')
    interval_default = _coerce_positive_int(
        defaults.get('poll_interval_minutes'), DEFAULT_POLL_INTERVAL_MINUTES, 'poll_interval_minutes', 'defaults'
    )
    tags_default = _coerce_tags(defaults.get('tags'))

    feeds_section = config_data.get('feeds')
    if isinstance(feeds_section, dict):
        raw_entries = list(feeds_section.items())
    elif isinstance(feeds_section, list):
        raw_entries = [(None, entry) for entry in feeds_section]
    else:
        logger.warning("No valid 'feeds' section found in feeds configuration")
        return []

    feeds: List[FeedConfig] = []
    seen_urls = set()
    for slug, feed_cfg in raw_entries:
        label = str(slug) if slug is not None else f"#{len(feeds) + 1}"
        if isinstance(feed_cfg, str):
            # Shorthand: slug: https://example.com/feed.xml
            feed_cfg = {'url': feed_cfg}
        if not isinstance(feed_cfg, dict):
            logger.warning(f"Skipping invalid feed configuration for '{label}': {feed_cfg}")
            continue
        url = str(feed_cfg.get('url') or '').strip()
        if url and url in seen_urls:
            logger.warning(f"Duplicate feed URL {url} for '{label}'; keeping the first entry")
            continue
        if url:
            seen_urls.add(url)
        author = feed_cfg.get('author', feed_cfg.get('author_id'))
        tags = feed_cfg.get('tags', feed_cfg.get('tag'))
        feeds.append(FeedConfig(
            url=url,
            author_id=str(author).strip() if author else author_default,
            max_items=_coerce_positive_int(feed_cfg.get('max_items'), max_items_default, 'max_items', label),
            poll_interval_minutes=_coerce_positive_int(
                feed_cfg.get('poll_interval_minutes', feed_cfg.get('interval_minutes')),
                interval_default,
                'poll_interval_minutes',
                label,
            ),
            tags=_coerce_tags(tags) if tags is not None else tags_default,
            slug=str(slug) if slug is not None else feed_cfg.get('slug'),
        ))
    return feeds


class Config:
    """Configuration manager for Feed Importer.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Feed definitions live in feeds.yaml and are read on demand via list_feeds().
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

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
        base_dir = path.dirname(path.abspath(__file__))

        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedImporter/1.0)")
        self.DEFAULT_AUTHOR = environ.get("DEFAULT_AUTHOR") or environ.get("USER") or "operator"

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Cover image downloads
        self.IMAGE_TIMEOUT = self._validate_positive_int("IMAGE_TIMEOUT", 30, 1)
        self.MAX_IMAGE_BYTES = self._validate_positive_int("MAX_IMAGE_BYTES", 10 * 1024 * 1024, 1024)

        # Number of feeds synchronized in parallel
        self.FEED_CONCURRENCY = self._validate_positive_int("FEED_CONCURRENCY", 5, 1)

        # Per-feed fallbacks for settings missing from feeds.yaml
        self.DEFAULT_MAX_ITEMS = self._validate_positive_int("DEFAULT_MAX_ITEMS", DEFAULT_MAX_ITEMS, 1)
        self.DEFAULT_POLL_INTERVAL_MINUTES = self._validate_positive_int(
            "DEFAULT_POLL_INTERVAL_MINUTES", DEFAULT_POLL_INTERVAL_MINUTES, 1
        )

        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Scheduler configuration
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # Diagnostics retained in run reports (logged regardless)
        self.DIAGNOSTIC_LEVEL = environ.get("DIAGNOSTIC_LEVEL", "WARNING").upper()

        # File paths
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.MEDIA_DIR = environ.get("MEDIA_DIR", path.join(self.DATA_PATH, "media"))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        USER_AGENT: "MyImporter/2.0"
        DATABASE_PATH: "/data/feeds.db"

        # Backward-compatible: nested under `environment`
        # environment:
        #   DATABASE_PATH: "/data/feeds.db"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

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

    def list_feeds(self, config_path: Optional[str] = None) -> List[FeedConfig]:
        """Read feeds.yaml and return the configured feeds.

        Never raises: a missing or malformed file yields an empty list.
        """
        feeds_path = config_path or self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not config_data:
            return []
        if isinstance(config_data, dict):
            # feeds.yaml defaults win over environment defaults
            defaults = {
                'max_items': self.DEFAULT_MAX_ITEMS,
                'poll_interval_minutes': self.DEFAULT_POLL_INTERVAL_MINUTES,
            }
            if isinstance(config_data.get('defaults'), dict):
                defaults.update(config_data['defaults'])
            config_data = {**config_data, 'defaults': defaults}
        feeds = parse_feed_configs(config_data, self.DEFAULT_AUTHOR)
        logger.info(f"Loaded {len(feeds)} feeds from {feeds_path}")
        return feeds


# Global configuration instance
config = Config()
