"""
Settings Module
===============

Pydantic-based configuration with environment variable loading.

Version: 0.1.0
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BlockchainMode(str, Enum):
    """Ledger operation mode."""

    MOCK = "mock"
    TESTNET = "testnet"
    MAINNET = "mainnet"


class StoreBackend(str, Enum):
    """Backing implementation for the keyed store."""

    MEMORY = "memory"
    REDIS = "redis"


class RedisSettings(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    password: SecretStr = SecretStr("")
    db: int = 0

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        pwd = self.password.get_secret_value()
        if pwd:
            return f"redis://:{pwd}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class StoreSettings(BaseSettings):
    """Keyed store selection."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    backend: StoreBackend = StoreBackend.MEMORY
    key_prefix: str = "zkescrow:"


class BlockchainSettings(BaseSettings):
    """Escrow ledger configuration."""

    model_config = SettingsConfigDict(env_prefix="BLOCKCHAIN_")

    mode: BlockchainMode = BlockchainMode.MOCK


class TrusteeSettings(BaseSettings):
    """Trustee network configuration."""

    model_config = SettingsConfigDict(env_prefix="TRUSTEE_")

    endpoints: str = "http://localhost:4001,http://localhost:4002,http://localhost:4003"
    threshold: int = Field(default=2, ge=2)
    total: int = Field(default=3, ge=2)

    distribute_timeout_seconds: float = 10.0
    distribute_attempts: int = 3
    backoff_base_seconds: float = 5.0
    collect_timeout_seconds: float = 30.0

    # Identity of this process when running the trustee service
    node_id: str = "trustee_1"

    # Shared secret for the release endpoints; empty leaves them open
    auth_token: SecretStr = SecretStr("")

    @property
    def endpoint_map(self) -> dict[str, str]:
        """Map trustee ids (trustee_1..trustee_n) to base URLs."""
        urls = [e.strip().rstrip("/") for e in self.endpoints.split(",") if e.strip()]
        return {f"trustee_{i + 1}": url for i, url in enumerate(urls)}


class WatcherSettings(BaseSettings):
    """Event watcher configuration."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_")

    poll_interval_seconds: float = 15.0
    position_key: str = "watcher:position"


class RevealSettings(BaseSettings):
    """Reveal workflow configuration."""

    model_config = SettingsConfigDict(env_prefix="REVEAL_")

    claim_ttl_seconds: int = 300
    retry_base_seconds: float = 5.0
    retry_max_attempts: int = 5


class VaultSettings(BaseSettings):
    """Secret vault configuration."""

    model_config = SettingsConfigDict(env_prefix="VAULT_")

    key_bytes: int = 32


class CORSSettings(BaseSettings):
    """CORS configuration."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    origins: str = "http://localhost:3000,http://localhost:5173"
    allow_credentials: bool = True

    @property
    def origins_list(self) -> list[str]:
        """Parse origins string into list."""
        return [o.strip() for o in self.origins.split(",") if o.strip()]


class ServicePorts(BaseSettings):
    """Service port configuration."""

    escrow: int = Field(default=8010, alias="ESCROW_PORT")
    trustee: int = Field(default=4001, alias="TRUSTEE_PORT")


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables with sensible defaults.
    Use the global `settings` singleton or call `get_settings()`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: LogLevel = LogLevel.INFO

    # Service ports
    ports: ServicePorts = Field(default_factory=ServicePorts)

    # Storage
    store: StoreSettings = Field(default_factory=StoreSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    # Ledger
    blockchain: BlockchainSettings = Field(default_factory=BlockchainSettings)

    # Escrow workflow
    trustee: TrusteeSettings = Field(default_factory=TrusteeSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    reveal: RevealSettings = Field(default_factory=RevealSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)

    # Security
    cors: CORSSettings = Field(default_factory=CORSSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Ensure log level is uppercase."""
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton.
    """
    return Settings()
