#!/usr/bin/env python3
"""
Configuration management for the feed ingestion engine.

This module centralizes configuration loading, validation, and logging setup.
It handles environment variables, an optional YAML secrets file and the
feeds.yaml source catalogue, and provides a single `config` instance for the
rest of the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# A desktop Chrome string; several hosts block obvious bot agents outright.
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


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
        force=True
    )

    # Line buffering keeps script and CLI output interleaved correctly
    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (pytest capture) may not support reconfigure
        pass

    # Third-party chatter is only useful when debugging the engine itself
    noisy_level = level_map.get(environ.get("LIBRARY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("asyncio", "charset_normalizer"):
        getLogger(name).setLevel(noisy_level)

    return getLogger("FeedIngest")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "FeedIngest.{name}" and inherit the global logging
    configuration set by _setup_global_logger().

    Example:
        logger = get_logger("xpath")
        logger.info("This will appear as 'FeedIngest.xpath - INFO - ...'")
    """
    return getLogger(f"FeedIngest.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for the ingestion engine.

    Values are loaded from, in increasing precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Feed sources come from feeds.yaml (FEEDS_CONFIG_PATH). Each entry under
    `feeds:` is kept as a raw mapping; `models.source_from_dict` turns it into
    a typed source when it is used.

    Example secrets.yaml format:
    ```yaml
    IMAP_PASSWORD: "app-password"
    RSSHUB_API_KEY: "your-key"
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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Outbound HTTP
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.ACCEPT_LANGUAGE = environ.get("ACCEPT_LANGUAGE", "en-US,en;q=0.9,zh-CN;q=0.8,zh;q=0.7")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.PRIORITY_TIMEOUT = self._validate_positive_int("PRIORITY_TIMEOUT", 15, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)

        # Script sandbox; the ceiling applies regardless of caller priority
        base_dir = path.dirname(path.abspath(__file__))
        self.SCRIPTS_DIR = environ.get("SCRIPTS_DIR", path.join(base_dir, "scripts"))
        self.SCRIPT_TIMEOUT = self._validate_positive_int("SCRIPT_TIMEOUT", 30, 1)

        # Headless rendering
        self.RENDER_HEADLESS = environ.get("RENDER_HEADLESS", "true").lower() != "false"
        self.RENDER_SETTLE_SECONDS = self._validate_positive_float("RENDER_SETTLE_SECONDS", 2.0, 0.0)
        self.PRIORITY_RENDER_SETTLE_SECONDS = self._validate_positive_float("PRIORITY_RENDER_SETTLE_SECONDS", 1.0, 0.0)

        # IMAP newsletters
        self.IMAP_DEFAULT_PORT = self._validate_positive_int("IMAP_DEFAULT_PORT", 993, 1)
        self.IMAP_DEFAULT_FOLDER = environ.get("IMAP_DEFAULT_FOLDER", "INBOX")
        self.IMAP_TIMEOUT = self._validate_positive_int("IMAP_TIMEOUT", 30, 5)
        self.EMAIL_BATCH_SIZE = self._validate_positive_int("EMAIL_BATCH_SIZE", 50, 1)

        # RSSHub routes (rsshub://...) are resolved by an injected client
        self.RSSHUB_ENDPOINT = environ.get("RSSHUB_ENDPOINT", "https://rsshub.app").rstrip("/")
        self.RSSHUB_API_KEY = environ.get("RSSHUB_API_KEY", "")

        # CLI concurrency across different feeds
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)

        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and one nested under `environment` are accepted.
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
        """Populate FEED_SOURCES and PROXY_URL from feeds.yaml.

        Any failure results in an empty mapping; a broken entry only skips itself.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.PROXY_URL = None
        if not isinstance(config_data, dict):
            self.FEED_SOURCES = {}
            return

        proxy_section = config_data.get('proxy')
        if isinstance(proxy_section, dict):
            proxy_url_value = proxy_section.get('url')
            if isinstance(proxy_url_value, str):
                normalized_proxy = proxy_url_value.strip()
                if normalized_proxy:
                    self.PROXY_URL = normalized_proxy
                    logger.info("Configured HTTP proxy for feed fetching via feeds.yaml")
            elif proxy_url_value is not None:
                logger.warning(f"Invalid proxy.url entry in {feeds_path}; ignoring proxy configuration")
        elif proxy_section not in (None, False):
            logger.warning(f"Proxy configuration in {feeds_path} must be a mapping with a url field")

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES = {}
            return

        new_sources: Dict[str, Dict[str, Any]] = {}
        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, str):
                new_sources[feed_slug] = {'url': feed_cfg}
            elif isinstance(feed_cfg, dict) and (
                feed_cfg.get('url') or feed_cfg.get('script_path') or feed_cfg.get('type') == 'email'
            ):
                new_sources[feed_slug] = dict(feed_cfg)
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg.get('type', 'url')}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}'")

        self.FEED_SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "http_timeout": self.HTTP_TIMEOUT,
            "priority_timeout": self.PRIORITY_TIMEOUT,
            "script_timeout": self.SCRIPT_TIMEOUT,
            "scripts_dir": self.SCRIPTS_DIR,
            "render_headless": self.RENDER_HEADLESS,
            "email_batch_size": self.EMAIL_BATCH_SIZE,
            "feed_count": len(self.FEED_SOURCES),
            "proxy_configured": bool(self.PROXY_URL),
            "rsshub_endpoint": self.RSSHUB_ENDPOINT,
            "has_rsshub_key": bool(self.RSSHUB_API_KEY),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
