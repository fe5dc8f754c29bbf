"""Configuration module for nanojournal."""

from nanojournal.config.loader import get_config_path, load_config, save_config
from nanojournal.config.schema import Config, MemoryConfig

__all__ = ["Config", "MemoryConfig", "load_config", "save_config", "get_config_path"]
