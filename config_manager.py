#!/usr/bin/env python3
"""
Configuration Management System for portmap
Loads the forward list (JSON array or JSON/YAML document), applies
environment overrides and validates everything before a port is opened
"""

import dataclasses
import json
import os
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from bridge import LOOKUP_RETRY_COUNT, LOOKUP_RETRY_DELAY
from endpoint import DIAL_TIMEOUT, parse_uri
from safe_logger import DEFAULT_FORMAT, get_safe_logger, parse_size

logger = get_safe_logger(__name__)

DEFAULT_CONFIG_FILE = "config.json"

EXAMPLE_CONFIG = [
    {"enable": True, "name": "mysql", "local": 33306, "remote": "tcp://172.27.205.246:3306"},
    {"enable": True, "name": "postgres", "local": 65432, "remote": "tcp://172.27.205.246:5432"},
    {"enable": True, "name": "ssh", "local": 2222, "remote": "tcp://172.27.205.246:22"},
    {"enable": False, "name": "dns", "local": 5353, "remote": "udp://172.27.205.246:53"},
]


@dataclass
class ForwardConfig:
    """One forwarding rule: listen on local, relay to remote"""
    name: Any = None
    local: Any = None
    remote: Any = None
    enable: Any = False


@dataclass
class BridgeConfig:
    """Engine tuning shared by all bridges"""
    dial_timeout: float = DIAL_TIMEOUT
    lookup_retry_count: int = LOOKUP_RETRY_COUNT
    lookup_retry_delay: float = LOOKUP_RETRY_DELAY
    bind_host: str = "0.0.0.0"


@dataclass
class FileLoggingConfig:
    """File logging configuration"""
    enabled: bool = False
    path: str = "portmap.log"
    max_size: str = "10MB"
    rotate_count: int = 5


@dataclass
class ConsoleLoggingConfig:
    """Console logging configuration"""
    enabled: bool = True
    color: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "WARNING"
    format: str = DEFAULT_FORMAT
    file: FileLoggingConfig = field(default_factory=FileLoggingConfig)
    console: ConsoleLoggingConfig = field(default_factory=ConsoleLoggingConfig)
    components: Dict[str, str] = field(default_factory=dict)


@dataclass
class MonitoringConfig:
    """Status HTTP endpoint configuration"""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090
    stats_interval: float = 0


@dataclass
class Config:
    """Main configuration class"""
    forwards: List[ForwardConfig] = field(default_factory=list)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def enabled_forwards(self) -> List[ForwardConfig]:
        return [forward for forward in self.forwards if forward.enable]


class ConfigurationError(Exception):
    """Configuration-related error"""
    pass


VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class ConfigManager:
    """Configuration manager with validation and environment support"""

    def __init__(self):
        self.config: Optional[Config] = None
        self._config_file: Optional[str] = None

    @property
    def config_file(self) -> Optional[str]:
        return self._config_file

    def load_config(self, config_file: Optional[str] = None) -> Config:
        """
        Load configuration from file with environment variable overrides

        Args:
            config_file: Path to the config file (default: search standard locations)

        Returns:
            Loaded and validated configuration
        """
        if config_file is None:
            config_file = self._find_config_file()

        self._config_file = config_file

        raw = self._load_file(config_file)
        config_dict = self._normalize(raw, config_file)
        config_dict = self._apply_env_overrides(config_dict)

        self.config = self._create_config_objects(config_dict)
        self._validate_config(self.config)

        logger.info(f"Configuration loaded from {config_file}: "
                    f"{len(self.config.enabled_forwards())} of {len(self.config.forwards)} forwards enabled")
        return self.config

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations"""
        search_paths = [
            DEFAULT_CONFIG_FILE,
            "config.yaml",
            "portmap.json",
            "portmap.yaml",
            os.path.expanduser("~/.config/portmap/config.json"),
            os.path.expanduser("~/.config/portmap/config.yaml"),
        ]

        for path in search_paths:
            if os.path.isfile(path):
                return path

        raise ConfigurationError(
            f"Configuration file not found. Searched: {search_paths}"
        )

    def _load_file(self, file_path: str) -> Any:
        """Load a JSON or YAML file, chosen by extension"""
        is_yaml = file_path.lower().endswith(('.yaml', '.yml'))
        try:
            with open(file_path, 'r') as f:
                if is_yaml:
                    return yaml.safe_load(f)
                return json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {file_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading {file_path}: {e}")

    def _normalize(self, raw: Any, file_path: str) -> Dict[str, Any]:
        """Accept the bare forward array as well as the sectioned document"""
        if raw is None:
            raise ConfigurationError(f"Configuration file is empty: {file_path}")
        if isinstance(raw, list):
            return {'forwards': raw}
        if isinstance(raw, dict):
            return raw
        raise ConfigurationError(
            f"Configuration in {file_path} must be a list of forwards or a mapping, "
            f"got {type(raw).__name__}"
        )

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides using PORTMAP_ prefix"""
        result = deepcopy(config)

        env_mappings = {
            'PORTMAP_LOG_LEVEL': (['logging', 'level'], str),
            'PORTMAP_LOG_FILE': (['logging', 'file', 'path'], str),
            'PORTMAP_STATUS_PORT': (['monitoring', 'port'], int),
            'PORTMAP_DIAL_TIMEOUT': (['bridge', 'dial_timeout'], float),
        }
        # Setting a path or port implies switching the feature on
        implied = {
            'PORTMAP_LOG_FILE': ['logging', 'file', 'enabled'],
            'PORTMAP_STATUS_PORT': ['monitoring', 'enabled'],
        }

        for env_var, (config_path, convert) in env_mappings.items():
            env_value = os.environ.get(env_var)
            if env_value is None:
                continue
            try:
                value = convert(env_value)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}")

            self._set_path(result, config_path, value)
            if env_var in implied:
                self._set_path(result, implied[env_var], True)

            logger.info(f"Applied environment override: {env_var}={env_value}")

        return result

    def _set_path(self, config: Dict[str, Any], path: List[str], value: Any):
        current = config
        for key in path[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _create_config_objects(self, config_dict: Dict[str, Any]) -> Config:
        """Create configuration objects from dictionary"""
        forwards_raw = config_dict.get('forwards', [])
        if not isinstance(forwards_raw, list):
            raise ConfigurationError("'forwards' must be a list")

        forwards = []
        for index, entry in enumerate(forwards_raw):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Forward #{index} must be an object, got {type(entry).__name__}")
            forwards.append(ForwardConfig(
                name=entry.get('name'),
                local=entry.get('local'),
                remote=entry.get('remote'),
                enable=entry.get('enable', False),
            ))

        config_kwargs = {'forwards': forwards}
        for section_name, section_class in [
            ('bridge', BridgeConfig),
            ('logging', LoggingConfig),
            ('monitoring', MonitoringConfig),
        ]:
            if section_name in config_dict:
                config_kwargs[section_name] = self._create_nested_config(
                    config_dict[section_name], section_class, section_name
                )

        return Config(**config_kwargs)

    def _create_nested_config(self, config_dict: Any, config_class: type, path: str) -> Any:
        """Create nested configuration objects recursively"""
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Section '{path}' must be a mapping")

        kwargs = {}
        for config_field in dataclasses.fields(config_class):
            if config_field.name not in config_dict:
                continue
            value = config_dict[config_field.name]
            if dataclasses.is_dataclass(config_field.type):
                kwargs[config_field.name] = self._create_nested_config(
                    value, config_field.type, f"{path}.{config_field.name}"
                )
            else:
                kwargs[config_field.name] = value

        return config_class(**kwargs)

    def _validate_config(self, config: Config):
        """Validate configuration for consistency and correctness"""
        errors = []

        for index, forward in enumerate(config.forwards):
            errors.extend(self._validate_forward(index, forward))

        if not isinstance(config.logging.level, str) or config.logging.level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"Invalid log level: {config.logging.level}")
        if not isinstance(config.logging.components, dict):
            errors.append("Logging components must map logger names to levels")
        else:
            for component, level in config.logging.components.items():
                if not isinstance(level, str) or level.upper() not in VALID_LOG_LEVELS:
                    errors.append(f"Invalid log level for component {component}: {level}")
        try:
            parse_size(str(config.logging.file.max_size))
        except ValueError:
            errors.append(f"Invalid log file max_size: {config.logging.file.max_size}")

        if config.monitoring.enabled and not _is_port(config.monitoring.port, allow_zero=False):
            errors.append(f"Invalid monitoring port: {config.monitoring.port}")
        if not isinstance(config.monitoring.stats_interval, (int, float)) or config.monitoring.stats_interval < 0:
            errors.append("Monitoring stats_interval must not be negative")

        if not isinstance(config.bridge.dial_timeout, (int, float)) or config.bridge.dial_timeout <= 0:
            errors.append("Bridge dial_timeout must be positive")
        if not isinstance(config.bridge.lookup_retry_count, int) or config.bridge.lookup_retry_count < 1:
            errors.append("Bridge lookup_retry_count must be at least 1")
        if not isinstance(config.bridge.lookup_retry_delay, (int, float)) or config.bridge.lookup_retry_delay < 0:
            errors.append("Bridge lookup_retry_delay must not be negative")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" +
                                     "\n".join(f"  - {error}" for error in errors))

    def _validate_forward(self, index: int, forward: ForwardConfig) -> List[str]:
        label = f"Forward #{index}"
        if isinstance(forward.name, str) and forward.name:
            label = f"Forward '{forward.name}'"

        if not isinstance(forward.enable, bool):
            return [f"{label}: enable must be true or false"]
        # Disabled entries are placeholders, only enabled ones are built
        if not forward.enable:
            return []

        errors = []
        if not (isinstance(forward.name, str) and forward.name):
            errors.append(f"{label}: name must be a non-empty string")
        if not _is_port(forward.local):
            errors.append(f"{label}: invalid local port {forward.local!r}")
        if not isinstance(forward.remote, str):
            errors.append(f"{label}: remote must be a 'scheme://host:port' string")
        else:
            try:
                parse_uri(forward.remote)
            except ValueError as e:
                errors.append(f"{label}: {e}")
        return errors


def _is_port(value: Any, allow_zero: bool = True) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return (0 if allow_zero else 1) <= value <= 65535


def example_config_text() -> str:
    return json.dumps(EXAMPLE_CONFIG, indent=2)
