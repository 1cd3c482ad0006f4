"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class SimpleBankConfig(BaseSettings):
    """Ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SIMPLE_BANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path or postgresql://...
    database_pool_size: int = 10
    auto_migrate: bool = True

    # Lock and commit timeouts
    lock_timeout_ms: int = 5000
    statement_timeout_ms: int = 30000

    # Retry policy for concurrency conflicts
    max_retry_attempts: int = 5
    retry_base_delay: float = 0.05  # seconds
    retry_max_delay: float = 1.0    # seconds

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    @property
    def lock_timeout_seconds(self) -> float:
        return self.lock_timeout_ms / 1000.0


# Global configuration instance
config = SimpleBankConfig()


def get_config() -> SimpleBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SimpleBankConfig:
    """Reload configuration from environment"""
    global config
    config = SimpleBankConfig()
    return config
