"""Shared utilities for the visit capture core."""

from .config_loader import get_nested_config, load_config

__all__ = [
    'get_nested_config',
    'load_config',
]
