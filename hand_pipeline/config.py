"""
Configuration management for the analysis pipeline.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any, Optional
from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass
class PipelineConfig:
    """Configuration for the analysis pipeline service"""

    # Analysis Service
    ANALYSIS_SERVICE_URL: Optional[str] = None
    REQUEST_TIMEOUT_SEC: float = 10.0

    # Planning and reconciliation
    SEGMENT_DURATION_CAP_SEC: int = 1800
    DEDUP_THRESHOLD_SEC: float = 5.0

    # Status tracking
    ENABLE_POLLING: bool = True
    POLL_INTERVAL_MS: int = 5000
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 60000
    STALL_TIMEOUT_SEC: int = 1800
    CALLBACK_SECRET: Optional[str] = None

    # Storage settings
    STORAGE_TYPE: str = "postgres"  # postgres, memory
    STORAGE_CONFIG: Dict[str, Any] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_CONSOLE_LEVEL: Optional[str] = None  # defaults to LOG_LEVEL
    LOG_DIR: str = "/app/data/pipeline"

    # HTTP server
    HTTP_HOST: str = "0.0.0.0"
    HTTP_PORT: int = 8000

    @classmethod
    def from_env(cls) -> 'PipelineConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Analysis Service
        config.ANALYSIS_SERVICE_URL = os.getenv("ANALYSIS_SERVICE_URL") or None
        config.REQUEST_TIMEOUT_SEC = float(os.getenv("ANALYSIS_REQUEST_TIMEOUT_SEC", "10"))

        # Planning and reconciliation
        config.SEGMENT_DURATION_CAP_SEC = int(os.getenv("SEGMENT_DURATION_CAP_SEC", "1800"))
        config.DEDUP_THRESHOLD_SEC = float(os.getenv("DEDUP_THRESHOLD_SEC", "5"))

        # Status tracking
        config.ENABLE_POLLING = os.getenv("ENABLE_POLLING", "true").lower() == "true"
        config.POLL_INTERVAL_MS = int(os.getenv("PIPELINE_POLL_MS", "5000"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("PIPELINE_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("PIPELINE_MAX_BACKOFF_MS", "60000"))
        config.STALL_TIMEOUT_SEC = int(os.getenv("ANALYSIS_STALL_TIMEOUT_SEC", "1800"))
        config.CALLBACK_SECRET = os.getenv("CALLBACK_SECRET") or None

        # Storage configuration
        config.STORAGE_TYPE = os.getenv("STORAGE_TYPE", "postgres")
        config.STORAGE_CONFIG = cls._parse_storage_config()

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_CONSOLE_LEVEL = os.getenv("LOG_CONSOLE_LEVEL")
        config.LOG_DIR = os.getenv("LOG_DIR", "/app/data/pipeline")

        # HTTP server
        config.HTTP_HOST = os.getenv("PIPELINE_HTTP_HOST", "0.0.0.0")
        config.HTTP_PORT = int(os.getenv("PIPELINE_HTTP_PORT", "8000"))

        return config

    @classmethod
    def _parse_storage_config(cls) -> Dict[str, Any]:
        """Parse storage specific configuration"""
        storage_type = os.getenv("STORAGE_TYPE", "postgres")

        if storage_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "lock_pool_size": int(os.getenv("POSTGRES_LOCK_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing required values"""
        if self.STORAGE_TYPE not in ("postgres", "memory"):
            raise ConfigurationError(f"Unsupported storage type: {self.STORAGE_TYPE}")

        storage_config = self.STORAGE_CONFIG or {}
        if self.STORAGE_TYPE == "postgres" and not storage_config.get("database_url"):
            raise ConfigurationError("Missing required environment variables: DATABASE_URL")

        if self.SEGMENT_DURATION_CAP_SEC <= 0:
            raise ConfigurationError("SEGMENT_DURATION_CAP_SEC must be positive")

        if self.DEDUP_THRESHOLD_SEC < 0:
            raise ConfigurationError("DEDUP_THRESHOLD_SEC must not be negative")

    def require_analysis_service_url(self) -> str:
        """Return the Analysis Service base URL or raise ConfigurationError"""
        if not self.ANALYSIS_SERVICE_URL:
            raise ConfigurationError("ANALYSIS_SERVICE_URL is not configured")
        return self.ANALYSIS_SERVICE_URL.rstrip("/")
