"""Utility package for general-purpose helpers.

Provides environment configuration and timestamp utilities.
"""

from .env import get_env_bool, get_env_float, get_env_int, get_env_str
from .time import iso_from_epoch, now_iso, now_ms

__all__ = [
    # Environment utilities
    "get_env_bool",
    "get_env_float",
    "get_env_int",
    "get_env_str",
    # Time utilities
    "iso_from_epoch",
    "now_iso",
    "now_ms",
]
