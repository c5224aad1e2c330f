from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Voucher Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    DATABASE_URL: str = "sqlite+aiosqlite:///./vouchers.db"
    DATABASE_SYNC_URL: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE: int = 300
    DB_CONNECT_ATTEMPTS: int = 3

    UPSTASH_REDIS_REST_URL: str = ""
    UPSTASH_REDIS_REST_TOKEN: str = ""

    JWT_PUBLIC_KEY_PATH: Optional[str] = "keys/public.pem"
    JWT_PRIVATE_KEY_PATH: Optional[str] = "keys/private.pem"
    JWT_SECRET_KEY: Optional[str] = None  # used instead of the key files for HS* algorithms
    JWT_ALGORITHM: str = "RS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # urlsafe-base64 AES-256 key that wraps the per-tenant signing secrets
    ENCRYPTION_KEY: str = ""
    ENCRYPTION_KEY_VERSION: str = "v1"

    # Licensing
    LICENSE_EXPIRY_WARNING_DAYS: int = 7
    ENABLE_HARDWARE_LOCK: bool = False
    ENABLE_IP_WHITELIST: bool = False
    # Reverse proxies in front of the API; 0 ignores X-Forwarded-For entirely
    TRUSTED_PROXY_HOPS: int = 0

    # Vouchers
    VOUCHER_NUMBER_PREFIX: str = "VCH"
    DEFAULT_CURRENCY: str = "INR"
    FINANCIAL_YEAR_START_MONTH: int = 4
    OTP_VALIDITY_MINUTES: int = 10

    # 2Factor.in one-time codes
    TWOFACTOR_API_KEY: Optional[str] = None
    TWOFACTOR_BASE_URL: str = "https://2factor.in/API/V1"
    TWOFACTOR_OTP_TEMPLATE: str = "OTP1"

    # Rate limits (requests per window)
    RATE_LIMIT_API: int = 100
    RATE_LIMIT_API_WINDOW: int = 900
    RATE_LIMIT_OTP: int = 3
    RATE_LIMIT_OTP_WINDOW: int = 600

    CORS_ORIGINS: str = "http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
