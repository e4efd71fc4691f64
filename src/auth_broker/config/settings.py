"""Configuration Settings for Auth Broker

Manages environment variables and application configuration.
Per-provider settings (client ids, secrets, webhook keys) are resolved
separately by the provider registry from prefixed environment variables.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SESSION_SECRET = "dev-secret-change-in-production"


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service info
    service_name: str = "auth-broker"
    service_version: str = "1.0.0"
    environment: str = "development"

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Redis configuration
    redis_enabled: bool = True
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    @property
    def redis_url(self) -> str:
        """Construct Redis URL from components"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Database configuration
    database_url: str = "sqlite+aiosqlite:///./auth_broker.db"
    sql_echo: bool = False
    database_auto_create: bool = True  # create_all at startup; production uses migrations

    # Provider selection
    auth_provider: str = "local_auth"

    # Session tokens
    session_secret: str = DEFAULT_SESSION_SECRET
    jwt_algorithm: str = "HS256"
    session_ttl_hours: int = 24
    session_issuer: str = "auth-broker"
    local_token_format: str = "jwt"  # jwt or compact

    # Cookies
    session_cookie_name: str = "session"
    state_cookie_name: str = "auth_state"
    state_ttl_seconds: int = 600

    # Caches
    session_cache_ttl_seconds: int = 60
    validation_cache_ttl_seconds: int = 300
    cache_max_entries: int = 1000

    # Local accounts
    bcrypt_rounds: int = 12
    enable_registration: bool = True

    # User sync
    enable_user_sync: bool = False
    sync_interval_seconds: int = 300

    # Outbound HTTP
    http_timeout_seconds: float = 10.0

    # Rate limiting
    rate_limit_enabled: bool = True

    # CORS configuration
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance

    Returns:
        Settings instance
    """
    return Settings()
