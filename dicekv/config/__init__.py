"""Configuration module for DiceKV."""

from .settings import Settings, settings

__all__ = ["Settings", "settings"]
