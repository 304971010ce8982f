"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowConfig(BaseSettings):
    """Clinic workflow engine configuration"""
    
    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: str = ""
    sqlite_path: str = "clinic_workflow.db"
    database_pool_size: int = 10
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Engine behaviour
    max_conflict_retries: int = 5
    max_escalation_level: int = 1
    reminder_interval_hours: int = 24
    allow_self_approval: bool = False
    default_rejection_policy: str = "terminate"
    
    # Delegation lookups
    delegation_cache_ttl_seconds: int = 30
    
    # Notifications
    notification_webhook_url: str = ""  # Empty = disabled
    notification_timeout: float = 5.0
    
    # Tenancy
    multi_tenant: bool = False
    
    class Config:
        env_prefix = "CLINIC_WORKFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WorkflowConfig()


def get_config() -> WorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = WorkflowConfig()
    return config
