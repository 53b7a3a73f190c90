"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List


class LoanDeskConfig(BaseSettings):
    """Loan desk configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///loan_desk.db"  # "memory://" for in-memory
    write_timeout_seconds: float = 5.0
    max_write_retries: int = 5
    
    # Loan defaults
    default_interest_rate: str = "0.0375"
    default_tenure_months: int = 12
    default_penalty_amount: str = "500"
    default_penalty_reason: str = "EMI Overdue"
    loan_id_prefix: str = "LN"
    
    # Listing
    default_page_size: int = 50
    max_page_size: int = 500
    
    # Lifecycle policy
    payable_statuses: List[str] = ["Verified", "Approved", "Active", "Overdue"]
    require_rejection_reason: bool = False
    
    # Shopkeeper token policy
    enforce_token_balance: bool = True
    application_token_cost: int = 1
    
    # Notification configuration
    notification_webhook_url: str = ""  # Empty = webhook channel disabled
    notification_timeout_seconds: float = 5.0
    async_notifications: bool = False
    
    # Feature flags
    enable_audit_logging: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    debug: bool = False  # Include tracebacks in error responses
    
    class Config:
        env_prefix = "LOANDESK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanDeskConfig()


def get_config() -> LoanDeskConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanDeskConfig:
    """Reload configuration from environment"""
    global config
    config = LoanDeskConfig()
    return config
