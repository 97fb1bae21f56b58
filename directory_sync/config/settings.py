"""
Directory Category Sync Engine
Centralized Configuration Management

Pydantic settings with environment variable support, validation, and type
safety for the projector, the refresh coordinator and the serving layer.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="retail_directory", alias="POSTGRES_DB", description="Database name")
    user: str = Field(default="directory", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    enabled: bool = Field(default=True, description="Cache query results in Redis")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Streaming Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    enabled: bool = Field(default=False, description="Consume listing events from Kafka")
    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="directory-category-sync", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=500, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    topics_listing_changes: str = Field(
        default="listing-category-changed", description="Listing category mutation topic"
    )
    dlq_suffix: str = Field(default=".dlq", description="Dead-letter topic suffix")


class DirectorySettings(BaseSettings):
    """Category read-model synchronization settings"""

    model_config = SettingsConfigDict(env_prefix="DIRECTORY_")

    debounce_seconds: float = Field(default=2.0, ge=0, description="Debounce window for refresh triggers")
    build_timeout_seconds: float = Field(default=60.0, gt=0, description="Overall timeout for one build cycle")
    backoff_base_seconds: float = Field(default=1.0, gt=0, description="First retry delay after a failed build")
    backoff_max_seconds: float = Field(default=60.0, gt=0, description="Retry delay ceiling")
    max_concurrent_builds: int = Field(default=4, ge=1, description="Builds allowed across scopes at once")
    tenant_scopes: bool = Field(default=False, description="Maintain a read model per tenant as well as the global one")
    max_secondary_categories: Optional[int] = Field(
        default=None,
        ge=0,
        description="Cap on secondary categories per listing (unset = unlimited, 9 = business profile policy)",
    )
    snapshot_isolation: Optional[str] = Field(
        default="REPEATABLE READ",
        description="Isolation level the builder reads under (unset = driver default)",
    )
    retained_versions: int = Field(default=2, ge=1, description="View versions kept per scope, active included")
    cache_ttl_seconds: int = Field(default=300, ge=1, description="TTL for cached query results")
    max_page_size: int = Field(default=100, ge=1, description="Largest page a browse query may request")
    max_related_limit: int = Field(default=50, ge=1, description="Largest related-listings result")


class SecuritySettings(BaseSettings):
    """Security Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    rate_limit_requests: int = Field(default=100, alias="RATE_LIMIT_REQUESTS", description="Rate limit requests")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS", description="Rate limit window")

    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    api_workers: int = Field(default=4, alias="API_WORKERS", description="API workers")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    directory: DirectorySettings = Field(default_factory=DirectorySettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
