"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankConfig(BaseSettings):
    """Minibank configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///minibank.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_size: int = 10
    lock_timeout_seconds: float = 5.0  # Max wait for a row lock inside a transfer
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    
    # Security configuration
    jwt_secret: str = ""  # MINIBANK_JWT_SECRET, required to start the server
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    password_hash_n: int = 16384  # scrypt CPU/memory cost
    password_hash_r: int = 8
    password_hash_p: int = 1
    password_max_length: int = 72  # bytes, UTF-8 encoded
    
    # Account configuration
    account_number_retries: int = 5
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    class Config:
        env_prefix = "MINIBANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
