from typing import List, Optional, Dict, Any
from pathlib import Path
import os
from pydantic import BaseModel, Field, validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"  # json or text
    handlers: List[str] = ["console", "file"]
    file_path: str = "logs/calendar_trader.log"
    max_file_size: int = 10_485_760  # 10MB
    backup_count: int = 5
    include_context: bool = True

    # Sentry integration
    sentry_enabled: bool = True
    sentry_attach_stacktrace: bool = True
    sentry_send_default_pii: bool = False


class CacheConfig(BaseModel):
    """Cache configuration"""
    default_ttl: int = 300  # 5 minutes
    key_prefix: str = "calendar_trader"

    # TTL by data type
    ttl_mapping: Dict[str, int] = {
        "accounts": 3600,       # 1 hour
        "index_quote": 5,       # 5 seconds
    }


class DatabaseConfig(BaseModel):
    """Database configuration"""
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800

    @validator("echo", pre=True)
    def validate_echo(cls, v, values):
        # Force echo to False in production
        if os.getenv("ENVIRONMENT") == "production":
            return False
        return v


class APIConfig(BaseModel):
    """API configuration"""
    title: str = "Calendar Trader API"
    description: str = "Scheduled calendar-spread strategy execution engine"
    version: str = "1.0.0"
    prefix: str = "/api/v1"


class SecurityConfig(BaseModel):
    """CORS configuration for the dashboard frontend"""
    allowed_origins: List[str] = []
    allowed_methods: List[str] = ["GET", "POST", "PUT", "DELETE", "PATCH"]
    allowed_headers: List[str] = ["*"]
    allow_credentials: bool = True


class ExecutorConfig(BaseModel):
    """Strategy executor configuration"""
    tick_interval_seconds: float = 30.0
    # Exit fill confirmation: polls per check and the pause between them
    confirm_attempts: int = 5
    confirm_poll_seconds: float = 1.0
    take_profit_max_attempts: int = 3
    contract_multiplier: int = 100
    index_symbol: str = "VIX"
    underlying_symbol: str = "SPX"


class GatewayConfig(BaseModel):
    """Brokerage gateway configuration"""
    # Index quote lookup by contract id (VIX on the IBKR Client Portal API)
    index_conids: Dict[str, str] = {"VIX": "13455763"}
    snapshot_fields: str = "31,84,86,7308"  # last, bid, ask, delta
    order_tif: str = "DAY"
    take_profit_tif: str = "GTC"


class Settings(BaseSettings):
    """Main application settings"""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # API Configuration
    api: APIConfig = APIConfig()
    security: SecurityConfig = SecurityConfig()

    # Frontend URLs (comma-separated for multiple frontends)
    frontend_url: Optional[str] = Field(None, validation_alias="FRONTEND_URL")

    # Database
    database_url: Optional[str] = Field(None, validation_alias="DATABASE_URL")
    database: DatabaseConfig = DatabaseConfig()
    enable_database: bool = Field(default=True, validation_alias="ENABLE_DATABASE")

    # Local fallback store used when the database is unreachable or disabled
    local_store_path: str = Field(default="data/strategies.json", validation_alias="LOCAL_STORE_PATH")

    # Redis
    redis_url: Optional[str] = Field(None, validation_alias="REDIS_URL")
    cache: CacheConfig = CacheConfig()
    enable_caching: bool = Field(default=False, validation_alias="ENABLE_CACHING")

    # Brokerage gateway
    ibkr_gateway_url: str = Field(default="https://localhost:5000/v1/api", validation_alias="IBKR_GATEWAY_URL")
    ibkr_account_id: Optional[str] = Field(None, validation_alias="IBKR_ACCOUNT_ID")
    ibkr_verify_ssl: bool = Field(default=False, validation_alias="IBKR_VERIFY_SSL")
    gateway: GatewayConfig = GatewayConfig()

    external_api_timeout: int = Field(default=30, validation_alias="EXTERNAL_API_TIMEOUT")
    external_api_retry_count: int = Field(default=3, validation_alias="EXTERNAL_API_RETRY_COUNT")

    # Strategy executor
    market_timezone: str = Field(default="America/New_York", validation_alias="MARKET_TIMEZONE")
    executor_tick_interval: Optional[float] = Field(None, validation_alias="EXECUTOR_TICK_INTERVAL")
    executor_autostart: bool = Field(default=False, validation_alias="EXECUTOR_AUTOSTART")
    executor: ExecutorConfig = ExecutorConfig()

    # Logging
    logging: LoggingConfig = LoggingConfig()

    # Sentry
    sentry_dsn: Optional[str] = Field(None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(default=0.1, validation_alias="SENTRY_TRACES_SAMPLE_RATE")
    sentry_profiles_sample_rate: float = Field(default=0.1, validation_alias="SENTRY_PROFILES_SAMPLE_RATE")
    sentry_environment: Optional[str] = Field(None, validation_alias="SENTRY_ENVIRONMENT")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow"
    )

    @model_validator(mode='after')
    def validate_database_config(self):
        """Validate database configuration"""
        if self.enable_database and not self.database_url:
            raise ValueError("DATABASE_URL is required when ENABLE_DATABASE=true")
        return self

    @model_validator(mode='after')
    def validate_cache_config(self):
        """Validate cache configuration"""
        if self.enable_caching and not self.redis_url:
            raise ValueError("REDIS_URL is required when ENABLE_CACHING=true")
        return self

    @model_validator(mode='after')
    def apply_executor_overrides(self):
        """Apply flat env overrides onto the executor group"""
        if self.executor_tick_interval is not None:
            if self.executor_tick_interval <= 0:
                raise ValueError("EXECUTOR_TICK_INTERVAL must be positive")
            self.executor.tick_interval_seconds = self.executor_tick_interval
        return self

    @property
    def async_database_url(self) -> Optional[str]:
        """Convert sync DATABASE_URL to async format for SQLAlchemy"""
        if not self.database_url:
            return None
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://")
        if self.database_url.startswith("sqlite:///"):
            return self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///")
        return self.database_url

    @property
    def cors_origins(self) -> List[str]:
        """Get CORS origins based on environment"""
        if self.environment == "development":
            origins = [
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:3000",
                "http://127.0.0.1:5173",
            ]
        else:
            origins = self.security.allowed_origins.copy()

        if self.frontend_url:
            frontend_origin = self.frontend_url
            if not frontend_origin.startswith(("http://", "https://")):
                frontend_origin = f"https://{frontend_origin}"
            if frontend_origin not in origins:
                origins.append(frontend_origin)

        return origins

    @property
    def logging_config(self) -> LoggingConfig:
        """Get environment-specific logging configuration"""
        if self.environment == "production":
            return LoggingConfig(
                level="INFO",
                format="json",
                handlers=["console", "file"],
                include_context=True,
                sentry_enabled=True
            )
        elif self.environment == "development":
            return LoggingConfig(
                level="DEBUG",
                format="text",
                handlers=["console"],
                include_context=True,
                sentry_enabled=False
            )
        elif self.environment == "testing":
            return LoggingConfig(
                level="WARNING",
                format="text",
                handlers=["console"],
                include_context=False,
                sentry_enabled=False
            )
        return self.logging

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment == "development"

    @property
    def is_testing(self) -> bool:
        """Check if running in test environment"""
        return self.environment == "testing"

    def get_external_api_config(self, service_name: str) -> Dict[str, Any]:
        """Get configuration for external API service"""
        configs = {
            "ibkr": {
                "base_url": self.ibkr_gateway_url,
                "timeout": self.external_api_timeout,
                "retry_count": self.external_api_retry_count,
                "verify_ssl": self.ibkr_verify_ssl,
            },
        }
        return configs.get(service_name, {})


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()  # type: ignore[call-arg]


# Create a global settings instance
settings = get_settings()
