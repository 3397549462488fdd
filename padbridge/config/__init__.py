"""Configuration module for padbridge."""

from padbridge.config.loader import get_config_path, load_config
from padbridge.config.schema import AccountConfig, Config, DmPolicy, GroupPolicy

__all__ = ["AccountConfig", "Config", "DmPolicy", "GroupPolicy", "get_config_path", "load_config"]
