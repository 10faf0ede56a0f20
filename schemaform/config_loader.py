"""
Configuration loading utilities for schemaform.

Loads config.yaml, merges it over the built-in defaults and configures
logging. A missing, empty or broken file never stops the application: the
defaults are used and a warning is logged.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging
from copy import deepcopy

from .exceptions import ConfigurationLoadError, log_error_with_context

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.yaml")

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Cached configuration
_config_cache: Optional[Dict[str, Any]] = None


def deep_merge(base_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries, with update_dict taking precedence.

    Args:
        base_dict: Base dictionary (defaults)
        update_dict: Dictionary to merge in (user config)

    Returns:
        Merged dictionary
    """
    result = deepcopy(base_dict)

    for key, value in update_dict.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)

    return result


def get_default_config() -> Dict[str, Any]:
    """
    Get the built-in default configuration.

    Returns:
        Dictionary with default configuration
    """
    return {
        'app': {
            'name': 'schemaform',
            'version': '1.0.0'
        },
        'logging': {
            'level': 'INFO',
            'format': DEFAULT_LOG_FORMAT
        },
        'lookup': {
            'base_url': '',
            'timeout': 10.0
        },
        'initialization': {
            'source_precedence': ['saved_link', 'query_params', 'default'],
            'current_user': None
        },
        'validation': {
            'email_pattern': r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
        }
    }


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration merged over the defaults.

    Args:
        config_path: Optional path to config file (defaults to config.yaml)

    Returns:
        Complete configuration dictionary
    """
    if config_path is None:
        config_path = CONFIG_FILE
    config_path = Path(config_path)

    default_config = get_default_config()

    if not config_path.exists():
        logger.warning(f"Configuration file not found: {config_path}")
        logger.info("Using default configuration")
        return default_config

    try:
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f)
        except (IOError, OSError) as e:
            raise ConfigurationLoadError(config_path, e)

        if user_config is None:
            logger.warning(f"Configuration file is empty: {config_path}")
            return default_config

        if not isinstance(user_config, dict):
            logger.error(f"Configuration file is not a valid dictionary: {config_path}")
            logger.info("Using default configuration")
            return default_config

        config = deep_merge(default_config, user_config)

        if not validate_config(config):
            logger.warning(f"Configuration in {config_path} has invalid values, using defaults for those sections")
            config = _repair_config(config, default_config)

        logger.info(f"Successfully loaded configuration from {config_path}")
        return config

    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {config_path}: {e}")
        logger.info("Using default configuration")
        return default_config

    except ConfigurationLoadError as e:
        log_error_with_context(e, "loading configuration", logging.ERROR)
        logger.info("Using default configuration")
        return default_config


def _config_problems(config: Dict[str, Any]) -> List[str]:
    """Names of the sections holding invalid values."""
    problems = []

    for section in ('app', 'logging', 'lookup', 'initialization', 'validation'):
        if not isinstance(config.get(section), dict):
            problems.append(section)

    lookup = config.get('lookup') if isinstance(config.get('lookup'), dict) else {}
    try:
        if float(lookup.get('timeout', 10.0)) <= 0:
            problems.append('lookup')
    except (ValueError, TypeError):
        problems.append('lookup')

    initialization = config.get('initialization') if isinstance(config.get('initialization'), dict) else {}
    precedence = initialization.get('source_precedence')
    if not isinstance(precedence, list) or not all(isinstance(name, str) for name in precedence):
        problems.append('initialization')

    logging_section = config.get('logging') if isinstance(config.get('logging'), dict) else {}
    if not isinstance(logging_section.get('level', 'INFO'), str):
        problems.append('logging')

    return problems


def validate_config(config: Dict[str, Any]) -> bool:
    """
    Validate configuration structure and values.

    Args:
        config: Configuration dictionary to validate

    Returns:
        True if configuration is valid, False otherwise
    """
    problems = _config_problems(config)
    for section in problems:
        logger.warning(f"Invalid configuration section: {section}")
    return not problems


def _repair_config(config: Dict[str, Any], default_config: Dict[str, Any]) -> Dict[str, Any]:
    repaired = deepcopy(config)
    for section in _config_problems(config):
        repaired[section] = deepcopy(default_config[section])
    return repaired


def get_config(reload: bool = False) -> Dict[str, Any]:
    """Cached configuration from config.yaml."""
    global _config_cache

    if _config_cache is None or reload:
        _config_cache = load_config()
    return _config_cache


def reload_config() -> None:
    """Drop the cached configuration so the next access re-reads config.yaml."""
    global _config_cache
    _config_cache = None


def get_config_value(section: str, key: str, default: Any = None,
                     config: Optional[Dict[str, Any]] = None) -> Any:
    """
    Get a single configuration value.

    Args:
        section: Configuration section name
        key: Key inside the section
        default: Value returned when the section or key is missing
        config: Configuration to read (defaults to the cached config.yaml)

    Returns:
        Configuration value or default
    """
    config = config if config is not None else get_config()
    section_values = config.get(section)
    if not isinstance(section_values, dict):
        return default
    return section_values.get(key, default)


def get_logging_level(level_str: Any) -> int:
    """Map string logging level to logging constant."""
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    if not isinstance(level_str, str):
        return logging.INFO
    return level_map.get(level_str.upper(), logging.INFO)


def configure_logging(config: Optional[Dict[str, Any]] = None) -> int:
    """
    Configure root logging from the 'logging' section.

    Returns:
        The logging level applied
    """
    try:
        level = get_logging_level(get_config_value('logging', 'level', 'INFO', config))
        log_format = get_config_value('logging', 'format', DEFAULT_LOG_FORMAT, config)
        logging.basicConfig(level=level, format=log_format)
    except Exception as e:
        level = logging.INFO
        logging.basicConfig(level=level)
        logger.error(f"Failed to configure logging from config: {e}, using INFO level")
    return level
