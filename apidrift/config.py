"""
Configuration management for the API drift monitor.

This module loads the monitor configuration from YAML/JSON files, applies
environment-specific overrides, validates the result and fills in defaults.
"""

import copy
import json
import os
from typing import Any, Dict, Optional

import jsonschema
import yaml
from dotenv import load_dotenv

from apidrift.exceptions import ConfigError
from apidrift.logger import get_logger

# Get logger
logger = get_logger("config")

DEFAULT_CONFIG = {
    "database": {
        "url": "sqlite:///apidrift.db",
        "echo": False
    },
    "redis": {
        "host": "localhost",
        "port": 6379,
        "db": 0,
        "queue": "traces_queue"
    },
    "ingestion": {
        "max_queue_length": 1000
    },
    "generalizer": {
        "trace_limit": 10000,
        "threshold": 0.1,
        "max_suggestions": 100
    },
    "logging": {
        "level": "INFO",
        "format": "text",
        "output": "logs/apidrift.log",
        "max_size": 10 * 1024 * 1024,
        "backup_count": 5
    }
}

# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "database": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "echo": {"type": "boolean"}
            }
        },
        "redis": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "db": {"type": "integer", "minimum": 0},
                "password": {"type": ["string", "null"]},
                "queue": {"type": "string", "minLength": 1}
            }
        },
        "ingestion": {
            "type": "object",
            "properties": {
                "max_queue_length": {"type": "integer", "minimum": 0}
            }
        },
        "generalizer": {
            "type": "object",
            "properties": {
                "trace_limit": {"type": "integer", "minimum": 1},
                "threshold": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
                "max_suggestions": {"type": "integer", "minimum": 1}
            }
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARN", "WARNING", "ERROR", "FATAL"]},
                "format": {"type": "string", "enum": ["text", "json"]},
                "output": {"type": ["string", "null"]},
                "max_size": {"type": "integer", "minimum": 0},
                "backup_count": {"type": "integer", "minimum": 0}
            }
        },
        "environment": {"type": "string"}
    }
}


def _read_config_file(config_path: str) -> Dict[str, Any]:
    file_ext = os.path.splitext(config_path)[1].lower()
    with open(config_path, "r") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ConfigError(f"Unsupported configuration file format: {file_ext}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    return data


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file and merge it over the defaults.

    Args:
        config_path: Path to the configuration file, or None for defaults only

    Returns:
        Dict containing the validated configuration

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not config_path:
        return apply_env_overrides(config)

    if not os.path.exists(config_path):
        logger.error(f"Configuration file not found: {config_path}")
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        file_config = _read_config_file(config_path)
    except ConfigError:
        raise
    except Exception as e:
        logger.error(f"Failed to load configuration: {str(e)}")
        raise ConfigError(f"Failed to load configuration: {str(e)}")

    # Apply environment-specific overrides if specified
    environment = file_config.get("environment")
    if environment:
        base, file_ext = os.path.splitext(config_path)
        env_config_path = f"{base}.{environment}{file_ext}"
        if os.path.exists(env_config_path):
            logger.info(f"Loading environment-specific configuration: {env_config_path}")
            try:
                merge_configs(file_config, _read_config_file(env_config_path))
            except Exception as e:
                logger.error(f"Failed to load environment-specific configuration: {str(e)}")
                raise ConfigError(f"Failed to load environment-specific configuration: {str(e)}")

    validate_config(file_config)
    return apply_env_overrides(merge_configs(config, file_config))


ENV_OVERRIDES = {
    "APIDRIFT_DATABASE_URL": ("database", "url", str),
    "APIDRIFT_REDIS_HOST": ("redis", "host", str),
    "APIDRIFT_REDIS_PORT": ("redis", "port", int),
    "APIDRIFT_REDIS_PASSWORD": ("redis", "password", str),
    "APIDRIFT_LOG_LEVEL": ("logging", "level", str)
}


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply APIDRIFT_* environment variables, reading a .env file first if present.

    Raises:
        ConfigError: If a numeric variable is not a number
    """
    load_dotenv()
    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        try:
            config.setdefault(section, {})[key] = cast(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {env_name}: {value}")
        logger.debug(f"Using {section}.{key} from {env_name}")
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration against the schema.

    Args:
        config: Configuration dictionary

    Raises:
        ConfigError: If the configuration is invalid
    """
    try:
        jsonschema.validate(instance=config, schema=CONFIG_SCHEMA)
    except jsonschema.exceptions.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        logger.error(f"Configuration validation failed at {location}: {e.message}")
        raise ConfigError(f"Invalid configuration at {location}: {e.message}")


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Args:
        base_config: Base configuration, updated in place
        override_config: Configuration to override base values

    Returns:
        Merged configuration dictionary
    """
    for key, value in override_config.items():
        if key in base_config and isinstance(base_config[key], dict) and isinstance(value, dict):
            merge_configs(base_config[key], value)
        else:
            base_config[key] = value

    return base_config


def get_setting(config: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    Read a dotted key such as ``"generalizer.threshold"`` from a configuration.

    Args:
        config: Configuration dictionary
        key: Dotted key
        default: Value returned when any part of the key is missing

    Returns:
        The configured value or the default
    """
    current = config
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current
