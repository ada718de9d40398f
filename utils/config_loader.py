"""Configuration management utilities."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "configs" / "thresholds.yaml"
CONFIG_ENV_VAR = "VISIT_CAPTURE_CONFIG"


def resolve_config_path(config_path=None) -> Path:
    """
    Pick the config file: explicit argument, then $VISIT_CAPTURE_CONFIG,
    then configs/thresholds.yaml in the repository.
    """
    if config_path:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(config_path=None) -> Dict[str, Any]:
    """
    Load configuration from YAML file.
    
    Args:
        config_path: Path to YAML configuration file (str or Path); see
            resolve_config_path for the fallback order
        
    Returns:
        Dictionary containing configuration (empty file -> {})
        
    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ValueError: If the top level is not a mapping
    """
    config_path = resolve_config_path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    
    logger.info(f"Loading configuration from {config_path}")
    
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError(f"Config root must be a mapping, got {type(config).__name__}")
    
    logger.debug(f"Loaded config keys: {list(config.keys())}")
    
    return config


def get_nested_config(config: Optional[Dict[str, Any]], key_path: str, default: Any = None) -> Any:
    """
    Get nested configuration value using dot notation.
    
    Example:
        get_nested_config(config, 'gesture_detection.stable_ms', default=600)
    
    Args:
        config: Configuration dictionary
        key_path: Dot-separated path to value
        default: Default value if path not found
        
    Returns:
        Configuration value or default
    """
    value = config or {}
    
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    
    return value
