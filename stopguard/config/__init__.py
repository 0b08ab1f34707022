"""
Configuration (pydantic-settings over config.yaml, env overrides with "__").
"""
from stopguard.config.config import Config, load_config

__all__ = ["Config", "load_config"]
