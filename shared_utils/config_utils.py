"""
Configuration utilities for the Carbon Stock Estimation Pipeline.

This module provides standardized configuration loading and validation
across all pipeline components.

Author: Diego Bengochea
"""

import yaml
import os
from pathlib import Path
from typing import Dict, Any, Optional, Union
import logging

# Repository root, where component packages live side by side
_REPO_ROOT = Path(__file__).resolve().parent.parent


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    component_name: Optional[str] = None,
    default_config_name: str = "config.yaml"
) -> Dict[str, Any]:
    """
    Load configuration from YAML file with standardized search patterns.

    Search order:
    1. Explicit config_path if provided
    2. Component directory (relative to CWD) + default_config_name
    3. Installed component package + default_config_name
    4. Current directory + default_config_name
    5. Environment variable CARBON_STOCK_CONFIG

    Args:
        config_path: Explicit path to configuration file
        component_name: Name of component (for automatic config discovery)
        default_config_name: Default config filename to search for

    Returns:
        Dict[str, Any]: Configuration dictionary

    Raises:
        FileNotFoundError: If no configuration file is found
        yaml.YAMLError: If configuration file is invalid YAML

    Examples:
        >>> config = load_config()  # Search for config.yaml
        >>> config = load_config("custom_config.yaml")
        >>> config = load_config(component_name="carbon_stock_model")
    """
    logger = logging.getLogger(__name__)

    search_paths = []

    if config_path:
        # Explicit path only, no fallback search
        search_paths.append(Path(config_path))
    else:
        if component_name:
            search_paths.append(Path(component_name) / default_config_name)
            search_paths.append(_REPO_ROOT / component_name / default_config_name)

        search_paths.append(Path(default_config_name))

        env_config = os.environ.get('CARBON_STOCK_CONFIG')
        if env_config:
            search_paths.append(Path(env_config))

    config_file = None
    for path in search_paths:
        if path.exists():
            config_file = path
            logger.debug(f"Found configuration file: {config_file}")
            break

    if not config_file:
        searched_paths = [str(p) for p in search_paths]
        raise FileNotFoundError(
            f"Configuration file not found. Searched paths: {searched_paths}"
        )

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Invalid YAML in {config_file}: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration in {config_file} must be a mapping")

    config['_meta'] = {
        'config_file': str(config_file.absolute()),
        'component_name': component_name,
    }

    logger.info(f"Loaded configuration from: {config_file}")
    return config


def validate_config(config: Dict[str, Any], required_sections: list = None) -> bool:
    """
    Validate configuration dictionary structure.

    Args:
        config: Configuration dictionary to validate
        required_sections: List of required top-level sections

    Returns:
        bool: True if configuration is valid

    Raises:
        ValueError: If configuration is invalid

    Examples:
        >>> validate_config(config, ['sampling', 'training', 'output'])
    """
    logger = logging.getLogger(__name__)

    if not isinstance(config, dict):
        raise ValueError("Configuration must be a dictionary")

    if required_sections:
        missing_sections = [s for s in required_sections if s not in config]
        if missing_sections:
            raise ValueError(f"Missing required configuration sections: {missing_sections}")

    logger.debug("Configuration validation passed")
    return True


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get nested configuration value using dot notation.

    Args:
        config: Configuration dictionary
        key_path: Dot-separated path to the value (e.g., 'training.ensemble.n_trees')
        default: Default value if key is not found

    Returns:
        Any: Configuration value or default

    Examples:
        >>> n_trees = get_config_value(config, 'training.ensemble.n_trees', 100)
    """
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def save_config(config: Dict[str, Any], output_path: Union[str, Path]) -> None:
    """
    Save configuration dictionary to YAML file.

    Args:
        config: Configuration dictionary to save
        output_path: Output file path

    Examples:
        >>> save_config(config, "run_config.yaml")
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    # Remove metadata before saving
    config_to_save = {k: v for k, v in config.items() if not k.startswith('_')}

    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_to_save, f, default_flow_style=False, sort_keys=False)

    logger = logging.getLogger(__name__)
    logger.info(f"Configuration saved to: {output_path}")
