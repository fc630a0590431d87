"""
Configuration management for the Timekeeper daemon.
"""

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from timekeeper_daemon.logging import get_logger

logger = get_logger("Config")

SYSTEM_CONFIG_PATH = "/etc/timekeeper/config.yaml"
CONFIG_ENV_VAR = "TIMEKEEPER_CONFIG"


class ConfigError(Exception):
    """Custom exception for configuration errors."""

    pass


class Config:
    """
    Handles loading, merging, and validating the daemon's configuration.

    Configuration Loading Priority (highest to lowest):
    1. Explicitly provided path via config_path parameter
    2. Environment variable TIMEKEEPER_CONFIG
    3. System-wide config at /etc/timekeeper/config.yaml
    4. Local config (development) in project directory

    The shipped default-config.yaml is always loaded first and the user
    configuration is merged on top of it, so every key the daemon reads
    exists even when the user file only overrides a few values.

    Example:
        >>> config = Config("/etc/timekeeper/config.yaml")
        >>> config.get("timezone")
        'Australia/Melbourne'
        >>> config["notifications"]["warning_seconds"]
        600
    """

    def __init__(self, config_path=None):
        """
        Initialize the configuration system.

        Args:
            config_path: Optional explicit path to configuration file.

        Raises:
            ConfigError: If configuration validation fails
        """
        self.config_path = None
        self.data = {}

        install_dir = os.path.join(os.path.dirname(__file__), "..")
        default_path = os.path.join(install_dir, "default-config.yaml")

        if os.path.exists(default_path):
            self.data = self._load_config(default_path)
            logger.debug(f"Loaded default configuration from: {default_path}")
        else:
            logger.warning(f"Default config not found at: {default_path}")

        user_config_path = None
        env_path = os.environ.get(CONFIG_ENV_VAR)

        if config_path and os.path.exists(config_path):
            user_config_path = config_path
            logger.debug(f"Using explicitly provided config path: {config_path}")
        elif env_path and os.path.exists(env_path):
            user_config_path = env_path
            logger.debug(f"Using config path from environment: {user_config_path}")
        elif os.path.exists(SYSTEM_CONFIG_PATH):
            user_config_path = SYSTEM_CONFIG_PATH
            logger.debug(f"Using persistent system config path: {user_config_path}")
        elif os.path.exists(os.path.join(install_dir, "config.yaml")):
            user_config_path = os.path.join(install_dir, "config.yaml")
            logger.debug(f"Using local config path: {user_config_path}")

        if user_config_path:
            user_config = self._load_config(user_config_path)
            if user_config:
                self._merge_configs(self.data, user_config)
                self.config_path = user_config_path
                logger.info(f"Merged user configuration from: {user_config_path}")
            else:
                logger.warning(
                    f"User config at {user_config_path} was empty or invalid"
                )
        else:
            logger.info("No user configuration found, using default configuration only")
            self.config_path = default_path

        try:
            self._validate_config()
            logger.info("Final configuration validated successfully")
        except ConfigError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_config(self, path):
        """
        Loads a YAML configuration file.

        Returns:
            dict: Parsed configuration data, or empty dict if file doesn't exist

        Raises:
            ConfigError: If YAML parsing fails or file cannot be read
        """
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file at {path}: {e}")
            raise ConfigError(f"Could not parse {path}") from e
        except IOError as e:
            logger.error(f"Error reading file at {path}: {e}")
            raise ConfigError(f"Could not read {path}") from e

    def _merge_configs(self, base, override):
        """
        Recursively merges the override config into the base config.
        Dictionaries are merged recursively, all other types override.
        """
        for key, value in override.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._merge_configs(base[key], value)
            else:
                base[key] = value

    @staticmethod
    def _validate_positive_integer(value, field_name: str, allow_zero: bool = False):
        """Validate that value is a positive integer."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(
                f"'{field_name}' must be an integer, got {type(value).__name__}"
            )
        if allow_zero:
            if value < 0:
                raise ConfigError(f"'{field_name}' must be non-negative, got {value}")
        else:
            if value <= 0:
                raise ConfigError(f"'{field_name}' must be positive, got {value}")

    @staticmethod
    def _validate_section(data, name):
        section = data.get(name)
        if not isinstance(section, dict):
            raise ConfigError(f"'{name}' section is missing or not a dictionary.")
        return section

    def _validate_config(self):
        """
        Validates the merged configuration.
        Raises ConfigError on validation failure with specific error messages.
        """
        logging_cfg = self._validate_section(self.data, "logging")
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if "level" in logging_cfg and logging_cfg["level"] not in valid_log_levels:
            raise ConfigError(
                f"Invalid log level: '{logging_cfg['level']}'. "
                f"Must be one of: {', '.join(valid_log_levels)}"
            )
        if logging_cfg.get("format", "plain") not in ("plain", "json"):
            raise ConfigError(
                f"Invalid log format: '{logging_cfg['format']}'. Must be 'plain' or 'json'"
            )
        if not isinstance(logging_cfg.get("target", "stderr"), str):
            raise ConfigError("'logging.target' must be stderr, stdout or a file path.")

        if not isinstance(self.data.get("db_path"), str):
            raise ConfigError("'db_path' is missing or not a string.")
        if not isinstance(self.data.get("ipc_socket"), str):
            raise ConfigError("'ipc_socket' is missing or not a string.")

        timezone = self.data.get("timezone")
        if not isinstance(timezone, str):
            raise ConfigError("'timezone' is missing or not a string.")
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: '{timezone}'") from e

        self._validate_positive_integer(
            self.data.get("sweep_interval_seconds"), "sweep_interval_seconds"
        )

        storage_cfg = self._validate_section(self.data, "storage")
        db_timeout = storage_cfg.get("db_timeout")
        if isinstance(db_timeout, bool) or not isinstance(db_timeout, (int, float)):
            raise ConfigError("'storage.db_timeout' must be a number")
        if db_timeout <= 0:
            raise ConfigError(f"'storage.db_timeout' must be positive, got {db_timeout}")
        self._validate_positive_integer(
            storage_cfg.get("write_retries"), "storage.write_retries"
        )

        notifications = self._validate_section(self.data, "notifications")
        if notifications.get("backend") not in ("email", "log"):
            raise ConfigError(
                f"Invalid notification backend: '{notifications.get('backend')}'. "
                "Must be 'email' or 'log'"
            )
        self._validate_positive_integer(
            notifications.get("warning_seconds"), "notifications.warning_seconds"
        )

        smtp = self._validate_section(self.data, "smtp")
        self._validate_positive_integer(smtp.get("port"), "smtp.port")
        if notifications["backend"] == "email" and not smtp.get("host"):
            raise ConfigError("'smtp.host' is required for the email backend")

        users = self.data.get("users")
        if users is not None:
            if not isinstance(users, dict):
                raise ConfigError("'users' section must be a dictionary.")

            for username, user_config in users.items():
                if not isinstance(user_config, dict):
                    raise ConfigError(
                        f"Configuration for user '{username}' must be a dictionary."
                    )
                email = user_config.get("email")
                if email is not None and (not isinstance(email, str) or "@" not in email):
                    raise ConfigError(f"'{username}.email' is not a valid address")
                if not isinstance(user_config.get("is_admin", False), bool):
                    raise ConfigError(f"'{username}.is_admin' must be true or false")

        logger.debug("Configuration validation passed.")

    def get(self, key, default=None):
        """
        Gets a configuration value, or default if the key is not set.
        """
        return self.data.get(key, default)

    def __getitem__(self, key):
        """
        Allows dictionary-style access to config data.

        Raises:
            KeyError: If key doesn't exist
        """
        return self.data[key]
