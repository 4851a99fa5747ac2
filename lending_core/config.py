"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "lending_core.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production-lending-core-secret"
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 15
    officer_roles: str = "admin,loan_officer"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Lending rules
    default_currency: str = "KES"
    default_late_fee: str = "100.00"
    late_fee_weekly_rate: str = "0.01"  # 1% of amount due per full week overdue
    installment_interval_days: int = 30
    due_date_convention: str = "fixed_30_day"  # fixed_30_day or calendar_month
    max_term_months: int = 360

    # Pagination
    default_page_limit: int = 10
    max_page_limit: int = 100

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False

    @property
    def officer_role_set(self) -> set:
        return {role.strip() for role in self.officer_roles.split(",") if role.strip()}


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
