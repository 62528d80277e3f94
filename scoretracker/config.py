"""
Configuration management for the score tracker.
Supports both JSON file configuration and environment variable overrides.
"""

import copy
import json
import os
from pathlib import Path
from typing import Dict, Any


class TrackerConfig:
    """Configuration management for the score tracker."""

    DEFAULT_CONFIG = {
        "app_name": "Zoomoot Score Tracker",
        "debug": False,
        "database": {
            "path": "score/zoomoot_scores.db",
            "busy_timeout": 5.0,
        },
        "auth": {
            "admin_password": "changeme123",
            "password_salt": "change-this-salt",
            "session_name": "zoomoot_admin",
            "session_lifetime": 3600,  # seconds, measured from login
        },
        "qr": {
            "max_uses": 50,
            "min_hours": 1,
            "max_hours": 168,
            "default_hours": 24,
            "base_url": "http://localhost:8081",
        },
    }

    def __init__(
        self,
        config_path: str = "tracker_config.json",
        create_missing: bool = True,
    ) -> None:
        """Initialize configuration from file, environment variables, or defaults."""
        self.config_path = Path(config_path)
        self.create_missing = create_missing
        self.config = self._load_config()
        self._apply_env_overrides()
        self._validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from JSON file or create default.

        @return: Dictionary containing the loaded configuration
        """
        config = copy.deepcopy(self.DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    loaded_config = json.load(f)

                # Merge with defaults to ensure all keys exist
                self._deep_merge(config, loaded_config)

            except (json.JSONDecodeError, IOError) as e:
                print(f"Error loading config from {self.config_path}: {e}")
                print("Using default configuration")
        elif self.create_missing:
            self._create_default_config()

        return config

    def _deep_merge(
        self,
        base_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
    ) -> None:
        """
        Recursively merge dictionaries.

        @param base_dict: Base dictionary to merge into
        @param update_dict: Dictionary with updates to merge
        """
        for key, value in update_dict.items():
            if (
                key in base_dict
                and isinstance(base_dict[key], dict)
                and isinstance(value, dict)
            ):
                self._deep_merge(base_dict[key], value)
            else:
                base_dict[key] = value

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.

        Secrets are normally supplied this way so they stay out of the JSON file.
        """
        env_mappings = {
            "APP_NAME": ("app_name",),
            "DEBUG_MODE": ("debug",),

            # Database
            "DB_PATH": ("database", "path"),
            "DB_BUSY_TIMEOUT": ("database", "busy_timeout"),

            # Authentication
            "ADMIN_PASSWORD": ("auth", "admin_password"),
            "PASSWORD_SALT": ("auth", "password_salt"),
            "SESSION_NAME": ("auth", "session_name"),
            "SESSION_LIFETIME": ("auth", "session_lifetime"),

            # QR codes
            "QR_MAX_USES": ("qr", "max_uses"),
            "QR_BASE_URL": ("qr", "base_url"),
        }

        # Names, secrets, paths and URLs are taken verbatim, never coerced to bool/int
        raw_values = {
            "APP_NAME",
            "ADMIN_PASSWORD",
            "PASSWORD_SALT",
            "SESSION_NAME",
            "DB_PATH",
            "QR_BASE_URL",
        }

        for env_var, config_path in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                if env_var in raw_values:
                    converted_value: Any = env_value
                else:
                    converted_value = self._convert_env_value(env_value)
                self._set_nested_config(config_path, converted_value)

    def _convert_env_value(self, value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        @param value: String value from environment variable
        @return: Converted value (bool, int, float, or string)
        """
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _set_nested_config(self, path: tuple, value: Any) -> None:
        """
        Set a nested configuration value using a path tuple.

        @param path: Tuple representing the nested path (e.g., ("auth", "session_lifetime"))
        @param value: Value to set
        """
        current = self.config
        for key in path[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _create_default_config(self) -> None:
        """
        Create a default configuration file.

        Writes the default configuration to the configured file path.
        """
        try:
            if self.config_path.parent != Path(""):
                self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.DEFAULT_CONFIG, f, indent=2)
            print(f"Created default configuration file: {self.config_path}")
        except IOError as e:
            print(f"Could not create config file {self.config_path}: {e}")

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Checks configuration values for validity and sets defaults for invalid values.
        """
        defaults = self.DEFAULT_CONFIG

        lifetime = self.config["auth"]["session_lifetime"]
        if not isinstance(lifetime, int) or isinstance(lifetime, bool) or lifetime <= 0:
            print("Warning: Invalid session_lifetime, using 3600")
            self.config["auth"]["session_lifetime"] = defaults["auth"]["session_lifetime"]

        max_uses = self.config["qr"]["max_uses"]
        if not isinstance(max_uses, int) or isinstance(max_uses, bool) or max_uses <= 0:
            print("Warning: Invalid qr max_uses, using 50")
            self.config["qr"]["max_uses"] = defaults["qr"]["max_uses"]

        min_hours = self.config["qr"]["min_hours"]
        max_hours = self.config["qr"]["max_hours"]
        if not (isinstance(min_hours, int) and isinstance(max_hours, int)) or not (
            1 <= min_hours <= max_hours
        ):
            print("Warning: Invalid qr hour range, using 1-168")
            self.config["qr"]["min_hours"] = defaults["qr"]["min_hours"]
            self.config["qr"]["max_hours"] = defaults["qr"]["max_hours"]

        default_hours = self.config["qr"]["default_hours"]
        if not isinstance(default_hours, int) or not (
            self.config["qr"]["min_hours"] <= default_hours <= self.config["qr"]["max_hours"]
        ):
            print("Warning: Invalid qr default_hours, using 24")
            self.config["qr"]["default_hours"] = defaults["qr"]["default_hours"]

        timeout = self.config["database"]["busy_timeout"]
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            print("Warning: Invalid busy_timeout, using 5.0")
            self.config["database"]["busy_timeout"] = defaults["database"]["busy_timeout"]

        if not str(self.config["auth"]["admin_password"]):
            print("Warning: Empty admin_password, using default")
            self.config["auth"]["admin_password"] = defaults["auth"]["admin_password"]

        session_name = self.config["auth"]["session_name"]
        if not isinstance(session_name, str) or not session_name.strip():
            print("Warning: Invalid session_name, using zoomoot_admin")
            self.config["auth"]["session_name"] = defaults["auth"]["session_name"]

        self.config["qr"]["base_url"] = str(self.config["qr"]["base_url"]).rstrip("/")

    def get(
        self,
        *keys: str,
    ) -> Any:
        """
        Get nested configuration value.

        @param keys: Variable arguments representing nested keys to traverse
        @return: Configuration value at the specified path, None if not found
        """
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    def set(self, *path: str, value: Any) -> None:
        """Set a nested configuration value, e.g. ``set("auth", "session_lifetime", value=60)``."""
        self._set_nested_config(path, value)

    @property
    def debug(self) -> bool:
        return bool(self.get("debug"))

    @property
    def session_lifetime(self) -> int:
        return int(self.get("auth", "session_lifetime"))

    @property
    def qr_max_uses(self) -> int:
        return int(self.get("qr", "max_uses"))

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        @return: True if saved successfully, False on error
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=2)
            return True
        except IOError as e:
            print(f"Could not save config file {self.config_path}: {e}")
            return False
