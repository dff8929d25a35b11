"""
DiceKV Configuration Settings

This module contains all configuration constants for the DiceKV server.
Every value can be overridden through a ``DICEKV_*`` environment variable;
command line flags in ``dicekv.server`` take precedence over both.
"""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    """Server configuration settings."""

    # Network settings
    HOST: str = os.environ.get("DICEKV_HOST", "0.0.0.0")
    PORT: int = int(os.environ.get("DICEKV_PORT", "7379"))

    # Store settings
    MAX_KEYS: int = int(os.environ.get("DICEKV_MAX_KEYS", "0"))  # 0 means unbounded
    CLEANUP_INTERVAL: float = 1.0  # Seconds between active expiry runs

    # Connection settings
    READ_BUFFER_SIZE: int = 4096
    CONNECTION_TIMEOUT: float = float(os.environ.get("DICEKV_IDLE_TIMEOUT", "300"))  # 0 disables
    SHUTDOWN_GRACE: float = 5.0  # Seconds sessions get to finish on shutdown

    # Protocol limits
    MAX_INLINE_LENGTH: int = 64 * 1024
    MAX_BULK_LENGTH: int = 512 * 1024 * 1024
    MAX_MULTIBULK_LENGTH: int = 1024 * 1024

    # Logging settings
    DEBUG: bool = os.environ.get("DICEKV_DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.environ.get("DICEKV_LOG_LEVEL", "INFO")


# Global settings instance
settings = Settings()
