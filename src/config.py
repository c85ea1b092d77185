"""
Quorum Broker Configuration Module - Environment-based configuration
Supports development, testing, and production settings
"""

import os
from typing import Optional
from functools import lru_cache

from dotenv import load_dotenv

from src.broker.quorum import MedianTieBreak
from src.broker.store import BrokerConfig

# Load .env file if present
load_dotenv()

class Settings:
    """Application settings loaded from environment variables"""

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = os.getenv("DEBUG", "true").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "quorum_broker.log")
    LOG_MAX_SIZE_MB: int = int(os.getenv("LOG_MAX_SIZE_MB", "100"))

    # ==========================================================================
    # Broker Identities
    # ==========================================================================
    BROKER_ID: str = os.getenv("BROKER_ID", "broker")
    BROKER_ADMIN_ID: str = os.getenv("BROKER_ADMIN_ID", "admin")
    BROKER_LEDGER_ID: str = os.getenv("BROKER_LEDGER_ID", "ledger")
    BROKER_ADMIN_API_KEY: Optional[str] = os.getenv("BROKER_ADMIN_API_KEY") or None

    # ==========================================================================
    # Aggregation Settings
    # ==========================================================================
    EXPIRATION_WINDOW_SECONDS: int = int(os.getenv("EXPIRATION_WINDOW_SECONDS", "300"))
    MEDIAN_TIE_BREAK: str = os.getenv("MEDIAN_TIE_BREAK", "lower")
    CALLBACK_TIMEOUT: float = float(os.getenv("CALLBACK_TIMEOUT", "10"))
    PROVIDER_CHANNEL: str = os.getenv("PROVIDER_CHANNEL", "websocket")
    EVENT_HISTORY_SIZE: int = int(os.getenv("EVENT_HISTORY_SIZE", "1000"))

    # ==========================================================================
    # Database Configuration
    # ==========================================================================
    @property
    def DATABASE_URL(self) -> str:
        """Get database URL with fallback for development"""
        url = os.getenv("DATABASE_URL")
        if url:
            return url
        return "sqlite:///./quorum_broker.db"

    # ==========================================================================
    # Redis Configuration
    # ==========================================================================
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None

    @property
    def REDIS_URL(self) -> str:
        """Construct Redis URL from components"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def broker_config(self) -> BrokerConfig:
        """Core tunables for BrokerStore"""
        return BrokerConfig(
            admin_id=self.BROKER_ADMIN_ID,
            ledger_id=self.BROKER_LEDGER_ID,
            broker_id=self.BROKER_ID,
            expiration_window=float(self.EXPIRATION_WINDOW_SECONDS),
            median_tie_break=MedianTieBreak(self.MEDIAN_TIE_BREAK.lower()),
            event_history_size=self.EVENT_HISTORY_SIZE,
        )

    def get_log_config(self) -> dict:
        """Get structured logging configuration"""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "correlation_id": {
                    "()": "src.middleware.correlation.CorrelationIdFilter"
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] [corr-id:%(correlation_id)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S"
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["correlation_id"],
                    "stream": "ext://sys.stdout"
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "formatter": "default",
                    "filters": ["correlation_id"],
                    "filename": self.LOG_FILE,
                    "maxBytes": self.LOG_MAX_SIZE_MB * 1024 * 1024,
                    "backupCount": 5
                }
            },
            "root": {
                "level": self.LOG_LEVEL,
                "handlers": ["console", "file"]
            }
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
