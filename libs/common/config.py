from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "test", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    CURRENCY: str = "PLN"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Background worker
    REDIS_URL: str = "redis://localhost:6379/0"
    SWEEP_INTERVAL_MINUTES: int = 5

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Public URLs
    FRONTEND_URL: str = "http://localhost:5173"
    SERVER_PUBLIC_URL: str = "http://localhost:3001"

    # Outbound email
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"

    # Operator auth
    # ADMIN_TOKEN shorter than 32 chars is treated as not configured.
    ADMIN_TOKEN: str = ""
    ADMIN_JWT_SECRET: str = ""

    # Checkout
    CHECKOUT_SESSION_TTL_MINUTES: int = 30
    MAGIC_LINK_TTL_MINUTES: int = 15

    # Payment gateway (Przelewy24-style REST API)
    GATEWAY_MERCHANT_ID: Optional[int] = None
    GATEWAY_POS_ID: Optional[int] = None
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_CRC_KEY: Optional[str] = None
    GATEWAY_API_URL: str = "https://sandbox.przelewy24.pl"
    GATEWAY_WEBHOOK_IPS: str = ""
    GATEWAY_RESERVATION_TTL_MINUTES: int = 120
    GATEWAY_TRANSACTION_TIME_LIMIT_MINUTES: int = 15

    # Manual bank transfer
    BANK_ACCOUNT: str = ""
    MANUAL_TRANSFER_OVERDUE_HOURS: int = 48

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def gateway_webhook_ips(self) -> list[str]:
        return [ip.strip() for ip in self.GATEWAY_WEBHOOK_IPS.split(",") if ip.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
