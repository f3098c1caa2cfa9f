"""Configuration module for nexustransfer."""

from nexustransfer.config.loader import load_config
from nexustransfer.config.schema import Config

__all__ = ["Config", "load_config"]
