"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # "memory://" for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    default_currency: str = "ZMW"
    
    # Concurrency configuration
    max_concurrency_retries: int = 3
    classification_workers: int = 1  # 1 = sequential sweep
    
    # Collaborators
    enable_audit_logging: bool = True
    enable_notifications: bool = True
    notification_webhook_url: str = ""  # Empty = log-only dispatcher
    notification_timeout: float = 5.0
    
    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
