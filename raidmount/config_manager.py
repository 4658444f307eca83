"""Configuration management for raidmount."""

import os
import json
import logging
from typing import Dict, Any, Optional, List
from pathlib import Path
from dataclasses import dataclass, asdict, fields, replace
from enum import Enum

import yaml

from .errors import ConfigError
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


class ConfigFormat(Enum):
    """Supported configuration file formats."""
    JSON = "json"
    YAML = "yaml"
    ENV = "env"


@dataclass
class RaidMountConfig:
    """raidmount configuration data structure."""
    log_level: str = "INFO"
    log_format: str = "text"
    max_command_timeout: int = 300
    use_sudo: bool = False
    absent_marker: str = "missing"
    read_only: bool = False
    filesystem_type: Optional[str] = None
    mount_options: List[str] = None
    metadata_version: Optional[str] = None
    chunk_size_kb: Optional[int] = None
    assume_clean: bool = True
    max_array_devices: int = 128
    cleanup_script_dir: str = "."

    def __post_init__(self):
        """Initialize default values for mutable fields."""
        if self.mount_options is None:
            self.mount_options = []


class ConfigManager:
    """Loads and validates configuration from defaults, a file and the environment."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'RAIDMOUNT_LOG_LEVEL': 'log_level',
        'RAIDMOUNT_LOG_FORMAT': 'log_format',
        'RAIDMOUNT_MAX_COMMAND_TIMEOUT': 'max_command_timeout',
        'RAIDMOUNT_USE_SUDO': 'use_sudo',
        'RAIDMOUNT_ABSENT_MARKER': 'absent_marker',
        'RAIDMOUNT_READ_ONLY': 'read_only',
        'RAIDMOUNT_FILESYSTEM_TYPE': 'filesystem_type',
        'RAIDMOUNT_MOUNT_OPTIONS': 'mount_options',
        'RAIDMOUNT_METADATA_VERSION': 'metadata_version',
        'RAIDMOUNT_CHUNK_SIZE_KB': 'chunk_size_kb',
        'RAIDMOUNT_ASSUME_CLEAN': 'assume_clean',
        'RAIDMOUNT_MAX_ARRAY_DEVICES': 'max_array_devices',
        'RAIDMOUNT_CLEANUP_SCRIPT_DIR': 'cleanup_script_dir'
    }

    BOOL_KEYS = {'use_sudo', 'read_only', 'assume_clean'}
    INT_KEYS = {'max_command_timeout', 'chunk_size_kb', 'max_array_devices'}
    LIST_KEYS = {'mount_options'}
    OPTIONAL_KEYS = {'filesystem_type', 'metadata_version', 'chunk_size_kb'}

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to configuration file
        """
        self.config_file_path = config_file_path
        self._config: Optional[RaidMountConfig] = None

    def load_config(self) -> RaidMountConfig:
        """
        Load configuration from the config file and environment variables.

        Returns:
            RaidMountConfig object with loaded configuration

        Raises:
            ConfigError: If the file is missing or unreadable, or a value is invalid
        """
        if self._config:
            return self._config

        # Start with default configuration
        config_dict = asdict(RaidMountConfig())

        if self.config_file_path:
            if not os.path.exists(self.config_file_path):
                raise ConfigError(f"Config file does not exist: {self.config_file_path}")
            config_dict.update(self._load_config_file(self.config_file_path))

        # Override with environment variables
        config_dict.update(self._load_from_environment())

        config = RaidMountConfig(**config_dict)
        self._validate_config(config)

        self._config = config
        logger.debug(f"Configuration loaded: {asdict(config)}")
        return config

    def reload_config(self) -> RaidMountConfig:
        """Force reload configuration from sources."""
        self._config = None
        return self.load_config()

    def apply_overrides(self, overrides: Dict[str, Any]) -> RaidMountConfig:
        """
        Apply command line overrides on top of the loaded configuration.

        Args:
            overrides: Field values to set; None values are skipped

        Returns:
            Validated RaidMountConfig with the overrides applied

        Raises:
            ConfigError: If a key is unknown or the merged configuration is invalid
        """
        config = self.load_config()
        known = {f.name for f in fields(RaidMountConfig)}

        changes = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {key}")
            changes[key] = self._coerce_value(key, value)

        merged = replace(config, **changes)
        self._validate_config(merged)

        self._config = merged
        return merged

    @staticmethod
    def detect_format(file_path: str) -> ConfigFormat:
        suffix = Path(file_path).suffix.lower()
        if suffix == '.json':
            return ConfigFormat.JSON
        if suffix in {'.yaml', '.yml'}:
            return ConfigFormat.YAML
        return ConfigFormat.ENV

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        """
        Load configuration from file.

        Args:
            file_path: Path to configuration file

        Returns:
            Dictionary of known configuration values
        """
        format_type = self.detect_format(file_path)

        try:
            if format_type == ConfigFormat.ENV:
                return self._load_env_file(file_path)

            with open(file_path, 'r') as f:
                if format_type == ConfigFormat.JSON:
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Error loading config file {file_path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {file_path} must contain a mapping")

        known = {f.name for f in fields(RaidMountConfig)}
        config = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            config[key] = self._coerce_value(key, value)
        return config

    def _load_env_file(self, file_path: str) -> Dict[str, Any]:
        """
        Load configuration from environment-style file.

        Args:
            file_path: Path to .env file

        Returns:
            Dictionary of configuration values
        """
        config = {}

        with open(file_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        key = key.strip()
                        value = value.strip().strip('"\'')

                        if key in self.ENV_MAPPINGS:
                            config_key = self.ENV_MAPPINGS[key]
                            config[config_key] = self._parse_env_value(config_key, value)

        return config

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Returns:
            Dictionary of configuration values from environment
        """
        config = {}

        for env_key, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[config_key] = self._parse_env_value(config_key, env_value)

        return config

    def _parse_env_value(self, config_key: str, value: str) -> Any:
        """
        Parse a string value to the type of its configuration field.

        Args:
            config_key: Configuration field name
            value: String value from the environment or an env-style file

        Returns:
            Parsed value in appropriate type
        """
        if config_key in self.OPTIONAL_KEYS and value.strip() == '':
            return None

        # Handle list values (comma-separated)
        if config_key in self.LIST_KEYS:
            return [item.strip() for item in value.split(',') if item.strip()]

        # Handle boolean values
        if config_key in self.BOOL_KEYS:
            return value.lower() in {'true', '1', 'yes', 'on'}

        # Handle integer values
        if config_key in self.INT_KEYS:
            try:
                return int(value)
            except ValueError:
                raise ConfigError(f"Invalid integer for {config_key}: {value}")

        # Default to string
        return value

    def _coerce_value(self, config_key: str, value: Any) -> Any:
        """Normalize a value read from a JSON or YAML file."""
        if isinstance(value, str):
            return self._parse_env_value(config_key, value)
        if value is None:
            if config_key in self.OPTIONAL_KEYS:
                return None
            raise ConfigError(f"{config_key} must not be empty")
        # YAML reads "metadata_version: 1.2" as a float
        if config_key == 'metadata_version' and isinstance(value, (int, float)) \
                and not isinstance(value, bool):
            return str(value)

        if config_key in self.LIST_KEYS:
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ConfigError(f"{config_key} must be a list of strings")
            return value
        if config_key in self.BOOL_KEYS:
            if not isinstance(value, bool):
                raise ConfigError(f"{config_key} must be a boolean, got {value!r}")
            return value
        if config_key in self.INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{config_key} must be an integer, got {value!r}")
            return value

        raise ConfigError(f"{config_key} must be a string, got {value!r}")

    def _validate_config(self, config: RaidMountConfig) -> None:
        """
        Validate configuration values.

        Args:
            config: Configuration to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config.max_command_timeout, int) or config.max_command_timeout <= 0:
            raise ConfigError("max_command_timeout must be a positive integer")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if str(config.log_level).upper() not in valid_log_levels:
            raise ConfigError(f"Invalid log level: {config.log_level}")

        if config.log_format not in {'text', 'json'}:
            raise ConfigError(f"Invalid log format: {config.log_format}")

        if not config.absent_marker or '/' in config.absent_marker:
            raise ConfigError(f"Invalid absent marker: {config.absent_marker!r}")

        if not isinstance(config.max_array_devices, int) or config.max_array_devices <= 0:
            raise ConfigError("max_array_devices must be a positive integer")

        if config.chunk_size_kb is not None and (
                not isinstance(config.chunk_size_kb, int) or config.chunk_size_kb <= 0):
            raise ConfigError(f"Invalid chunk size: {config.chunk_size_kb}")

        if config.filesystem_type and \
                config.filesystem_type not in SystemCommandExecutor.ALLOWED_FILESYSTEMS:
            raise ConfigError(f"Invalid filesystem type: {config.filesystem_type}")

        for option in config.mount_options:
            if option not in SystemCommandExecutor.ALLOWED_MOUNT_OPTIONS:
                raise ConfigError(f"Invalid mount option: {option}")
