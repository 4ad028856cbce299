from pydantic_settings import BaseSettings
from typing import List, Optional, Union
from pydantic import field_validator, model_validator
import json


DEFAULT_SECRET_KEY = "dev-secret-key-change-me"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "OneStep Authentication API"
    ENVIRONMENT: str = "development"  # development, test, production

    # Logging
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # Database Settings
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* parts when set
    POSTGRES_USER: str = "user"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "onestep_db"

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Redis Settings (rate limiting and Celery task queue)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Token signing
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    ALGORITHM: str = "HS256"
    SESSION_EXPIRE_DAYS: int = 7
    SESSION_COOKIE_NAME: str = "onestep-session"
    CONTINUATION_TOKEN_EXPIRE_MINUTES: int = 5

    # One-time codes
    OTP_EXPIRE_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5
    EXPOSE_DEV_OTP: bool = False  # Echo issued codes in responses (never in production)

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "redis"  # redis or memory
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 900

    # Messaging delivery (Telegram bot)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    DELIVERY_TIMEOUT_SECONDS: float = 5.0

    # WebAuthn-style biometric credentials
    WEBAUTHN_RP_ID: str = "localhost"
    WEBAUTHN_RP_NAME: str = "OneStep Authentication"
    WEBAUTHN_ORIGIN: str = "http://localhost:3000"
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = 300
    MAX_BIOMETRIC_CREDENTIALS: int = 5

    # Reverse proxies allowed to set X-Forwarded-For (addresses or CIDR ranges).
    # Empty means the header is ignored and the socket peer is the client.
    TRUSTED_PROXIES: Union[List[str], str] = []

    # CORS Settings - can be set as JSON string in .env
    BACKEND_CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("BACKEND_CORS_ORIGINS", "TRUSTED_PROXIES", mode="before")
    @classmethod
    def parse_address_list(cls, v: Union[List[str], str]) -> List[str]:
        """Parse address lists from a JSON string, a comma list, or a list"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not valid JSON, split by comma
                return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        if v not in ("redis", "memory"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'redis' or 'memory'")
        return v

    @model_validator(mode="after")
    def check_production_safety(self) -> "Settings":
        """Refuse development conveniences and default secrets in production"""
        if self.is_production:
            if self.SECRET_KEY == DEFAULT_SECRET_KEY:
                raise ValueError("SECRET_KEY must be set in production")
            if self.EXPOSE_DEV_OTP:
                raise ValueError("EXPOSE_DEV_OTP cannot be enabled in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
