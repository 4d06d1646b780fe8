from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache


class Settings(BaseSettings):
    """Commission engine settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Partner Commission Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Redis Cache / Lock Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    CACHE_NAMESPACE: str = "commission"

    # Settlement idempotency and locking
    SETTLEMENT_CACHE_TTL: int = 3600  # 1 hour idempotency window
    SETTLEMENT_LOCK_TTL: int = 30  # Lease seconds, survives crashed holders
    SETTLEMENT_LOCK_WAIT: float = 10.0  # Max seconds to wait for the lock
    SETTLEMENT_LOCK_POLL_INTERVAL: float = 0.05

    # Commission Engine
    COMMISSION_MAX_UPLINE_DEPTH: int = 10  # Global ceiling; tiers can only be stricter
    COMMISSION_ENGINE_VERSION: str = "1.0"
    DEFAULT_CURRENCY: str = "USD"
    BOUNDARY_TOTAL_TOLERANCE: Decimal = Decimal("0.01")  # Major units

    # Document numbering (payout requests)
    FINANCIAL_YEAR_START_MONTH: int = 4  # April-March
    PAYOUT_REQUEST_PREFIX: str = "PAY"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def normalize_database_url(cls, v):
        if isinstance(v, str):
            if v.startswith("postgres://"):
                return v.replace("postgres://", "postgresql+psycopg://", 1)
            if v.startswith("postgresql+asyncpg://"):
                return v.replace("postgresql+asyncpg://", "postgresql+psycopg://", 1)
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @field_validator('COMMISSION_MAX_UPLINE_DEPTH')
    @classmethod
    def validate_max_depth(cls, v):
        if v < 1:
            raise ValueError("COMMISSION_MAX_UPLINE_DEPTH must be at least 1")
        return v

    @field_validator('DEFAULT_CURRENCY')
    @classmethod
    def uppercase_currency(cls, v):
        return v.upper()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
