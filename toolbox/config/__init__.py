"""
Config Module

YAML/environment configuration loading and validation.
"""

from .loader import ConfigError, ConfigLoader, DownloaderConfig

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DownloaderConfig",
]
