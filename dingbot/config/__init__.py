"""Configuration module for dingbot."""

from dingbot.config.loader import load_config, get_config_path
from dingbot.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
