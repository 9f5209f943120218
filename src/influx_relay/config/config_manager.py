"""Configuration management for the InfluxDB relay with hot-reload and validation."""

import copy
import json
import logging
import os
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent

from jsonschema import ValidationError, validate
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

ENV_PREFIX = "INFLUXRELAY_"
ENV_SEPARATOR = "__"

CONFIG_FILES: dict[str, str] = {
    "system": "system.json",
    "influxdb": "influxdb.json",
}

DEFAULTS: dict[str, dict] = {
    "system": {
        "version": "1.0",
        "logging": {"level": "INFO"},
        "scheduler": {
            "write_interval": 10,
            "soft_limit": 1000,
            "hard_limit": 2000,
        },
        "measurements": {
            "mode": "by_name",
            "prefix": "",
            "percentage_scale": "default",
        },
        "export": {"delay_seconds": 10},
        "api": {
            "enabled": True,
            "host": "0.0.0.0",  # nosec B104 - Configurable bind address  # noqa: S104
            "port": 5000,
            "debug": False,
        },
    },
    "influxdb": {
        "version": "1.0",
        "host": "",
        "protocol": "http",
        "port": 8086,
        "organization": "",
        "token": "",
        "username": "root",
        "password": "root",
        "database": "",
    },
}

SCHEMAS: dict[str, dict] = {
    "system": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "logging": {
                "type": "object",
                "properties": {"level": {"type": "string"}},
            },
            "scheduler": {
                "type": "object",
                "properties": {
                    "write_interval": {
                        "type": "integer",
                        "minimum": 10,
                        "maximum": 60,
                    },
                    "soft_limit": {"type": "integer", "minimum": 1},
                    "hard_limit": {"type": "integer", "minimum": 2},
                },
            },
            "measurements": {
                "type": "object",
                "properties": {
                    "mode": {"enum": ["by_name", "by_zone", "by_zone_name"]},
                    "prefix": {"type": "string"},
                    "percentage_scale": {"enum": ["default", "int", "float"]},
                },
            },
            "export": {
                "type": "object",
                "properties": {"delay_seconds": {"type": "number", "minimum": 0}},
            },
            "api": {"type": "object"},
        },
        "required": [
            "version",
            "logging",
            "scheduler",
            "measurements",
            "export",
            "api",
        ],
    },
    "influxdb": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "host": {"type": "string"},
            "protocol": {"enum": ["http", "https"]},
            "port": {"type": ["integer", "string"]},
            "organization": {"type": "string"},
            "token": {"type": "string"},
            "username": {"type": "string"},
            "password": {"type": "string"},
            "database": {"type": "string"},
        },
        "required": ["version", "host", "protocol", "port", "database"],
    },
}


def merge_defaults(config: dict, default: dict) -> dict:
    """Recursively merge default values into config, filling in missing keys."""
    for k, v in default.items():
        if k not in config:
            config[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(config[k], dict):
            merge_defaults(config[k], v)
    return config


class ConfigError(Exception):
    """Custom exception for configuration errors."""


class ConfigReloadHandler(FileSystemEventHandler):
    """Watches for file modifications and triggers a reload callback."""

    def __init__(self, reload_callback: Callable[[str], None]) -> None:
        """
        Initialize the handler.

        Args:
            reload_callback: Function to call with the path of the modified file.
        """
        self.reload_callback = reload_callback

    def on_modified(self, event: "FileSystemEvent") -> None:
        """Forward modifications of regular files to the callback."""
        if event.is_directory:
            return
        self.reload_callback(str(event.src_path))


class ConfigManager:
    """Manages relay configuration files with hot-reload, schema validation, and env var overrides."""

    def __init__(
        self,
        config_dir: str = "/data",
        *,
        enable_watchers: bool = True,
    ) -> None:
        """
        Initialize the ConfigManager.

        Args:
            config_dir: Directory where config files are stored.
            enable_watchers: Whether to enable file watchers (default: True).
        """
        self.config_dir: str = config_dir
        self.configs: dict[str, dict] = {}
        self._listeners: list[Callable[[str, dict], None]] = []
        self.logger = logging.getLogger("influx_relay.config")
        self._enable_watchers = enable_watchers
        self._load_all_configs()
        if self._enable_watchers:
            self._setup_watchers()

    def _load_all_configs(self) -> None:
        """
        Load all config files, create defaults if missing, and apply env overrides.

        Raises ConfigError if validation fails.
        """
        for key, filename in CONFIG_FILES.items():
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
        self._apply_env_overrides()
        for key in CONFIG_FILES:
            self._validate_config(key)

    def _load_json(self, filename: str, default: dict) -> dict:
        """
        Load a JSON config file, or create it with defaults if missing or invalid.

        Ensures all required keys are present by merging with defaults.
        """
        path = os.path.join(self.config_dir, filename)
        if not os.path.exists(path):
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config

        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                msg = f"Config {filename} must be a dict"
                raise TypeError(msg)
        except (json.JSONDecodeError, TypeError, OSError):
            self.logger.exception(
                "Failed to load %s. Restoring default config.",
                filename,
            )
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config
        return merge_defaults(data, default)

    def _save_json(self, filename: str, data: dict) -> None:
        """
        Save a config dict to a JSON file.

        Raises:
            ConfigError: If saving fails.
        """
        path = os.path.join(self.config_dir, filename)
        try:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            self.logger.exception("Failed to save %s", filename)
            raise ConfigError(f"Failed to save {filename}: {e}") from e

    def _validate_config(self, key: str) -> None:
        """
        Validate a config dict against its schema.

        Raises:
            ConfigError: If validation fails.
        """
        schema = SCHEMAS.get(key, {})
        try:
            validate(instance=self.configs[key], schema=schema)
        except ValidationError as e:
            self.logger.exception("Validation error in %s config: %s", key, e.message)
            raise ConfigError(f"Validation error in {key} config: {e.message}") from e

    def _apply_env_overrides(self) -> None:
        """
        Apply INFLUXRELAY_ environment variable overrides to configs.

        Format: INFLUXRELAY_SECTION__KEY1__KEY2=VALUE, with keys separated by a
        double underscore so that keys may contain single underscores
        (e.g., INFLUXRELAY_SYSTEM__SCHEDULER__WRITE_INTERVAL=30).
        """
        for env_key, value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX) or ENV_SEPARATOR not in env_key:
                continue
            parts = env_key[len(ENV_PREFIX) :].lower().split(ENV_SEPARATOR)
            section, keys = parts[0], parts[1:]
            if section not in self.configs or not all(keys):
                continue
            try:
                d = self.configs[section]
                for k in keys[:-1]:
                    d = d.setdefault(k, {})
                try:
                    parsed_value = json.loads(value)
                except ValueError:
                    parsed_value = value
                d[keys[-1]] = parsed_value
            except (AttributeError, TypeError):
                self.logger.exception("Failed to apply env override %s", env_key)
                continue
            self.logger.info(
                "Applied env override: %s -> %s %s",
                env_key,
                section,
                ".".join(keys),
            )

    def _setup_watchers(self) -> None:
        """Set up file watchers for hot-reload capability using watchdog."""
        self._observer = Observer()
        handler = ConfigReloadHandler(self._on_config_change)
        self._observer.schedule(handler, self.config_dir, recursive=False)
        self._observer_thread = threading.Thread(
            target=self._observer.start,
            daemon=True,
        )
        self._observer_thread.start()

    def cleanup(self) -> None:
        """Clean up resources, including stopping file watchers."""
        if not self._enable_watchers:
            return
        if hasattr(self, "_observer") and self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=1.0)
        if hasattr(self, "_observer_thread") and self._observer_thread.is_alive():
            self._observer_thread.join(timeout=1.0)

    def _on_config_change(self, path: str) -> None:
        """
        Handle config file changes; reload, re-validate, and notify listeners.

        A section that fails validation after reload keeps its previous value.
        """
        for key, filename in CONFIG_FILES.items():
            if os.path.join(self.config_dir, filename) != path:
                continue
            self.logger.info("Detected change in %s, reloading...", filename)
            previous = self.configs[key]
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
            self._apply_env_overrides()
            try:
                self._validate_config(key)
            except ConfigError:
                self.logger.exception(
                    "Config %s failed validation after reload, keeping previous.",
                    key,
                )
                self.configs[key] = previous
                return
            self._notify_listeners(key, self.configs[key])

    def get_config(self, key: str) -> dict:
        """
        Get a config by key ('system', 'influxdb').

        Raises:
            KeyError: If the config key is not found.
        """
        if key not in self.configs:
            raise KeyError(f"Config '{key}' not found.")
        return self.configs[key]

    def set_value(self, key: str, path: list[str], value: Any) -> None:
        """
        Set a nested value, validate the section and save it.

        Args:
            key: The config section key.
            path: Nested keys leading to the value.
            value: The new value.

        Raises:
            KeyError: If the config key is not recognized.
            ConfigError: If the result fails validation; nothing is changed.
        """
        if not path:
            raise KeyError("No key given.")
        updated = copy.deepcopy(self.get_config(key))
        d = updated
        for k in path[:-1]:
            d = d.setdefault(k, {})
        d[path[-1]] = value

        previous = self.configs[key]
        self.configs[key] = updated
        try:
            self._validate_config(key)
        except ConfigError:
            self.configs[key] = previous
            raise
        self.save_config(key)

    def save_config(self, key: str) -> None:
        """
        Save a config by key back to its file.

        Raises:
            KeyError: If the config key is not recognized.
        """
        if key not in CONFIG_FILES:
            raise KeyError(f"Config '{key}' not recognized.")
        self._save_json(CONFIG_FILES[key], self.configs[key])

    def register_listener(self, callback: Callable[[str, dict], None]) -> None:
        """
        Register a callback to be notified when a config changes.

        Args:
            callback: Function to call with (key, config) when a config changes.
        """
        self._listeners.append(callback)

    def _notify_listeners(self, key: str, config: dict) -> None:
        for cb in self._listeners:
            try:
                cb(key, config)
            except Exception:  # noqa: PERF203
                self.logger.exception("Listener callback failed")
