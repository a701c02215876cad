"""
kvlab Configuration Settings

This module contains all configuration constants shared by the server
and the client. Values can be overridden through environment variables.
"""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    """Server and client configuration settings."""

    # Network settings
    HOST: str = os.environ.get("KVLAB_HOST", "127.0.0.1")
    PORT: int = int(os.environ.get("KVLAB_PORT", "6379"))

    # Keyspace settings
    DB: int = int(os.environ.get("KVLAB_DB", "0"))
    DATABASES: int = int(os.environ.get("KVLAB_DATABASES", "16"))

    # TTL settings
    CLEANUP_INTERVAL: float = 1.0  # Seconds between active cleanup runs

    # Connection settings
    READ_BUFFER_SIZE: int = 65536
    SOCKET_TIMEOUT: float = float(os.environ.get("KVLAB_SOCKET_TIMEOUT", "10.0"))
    ENCODING: str = "utf-8"

    # Logging settings
    DEBUG: bool = os.environ.get("KVLAB_DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.environ.get("KVLAB_LOG_LEVEL", "INFO")


# Global settings instance
settings = Settings()
