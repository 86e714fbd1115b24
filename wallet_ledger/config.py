"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class LedgerConfig(BaseSettings):
    """Wallet ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///wallet_ledger.db"  # sqlite:///path, sqlite://:memory: or memory://
    
    # Money rules
    default_currency: str = "GHS"
    min_transaction_amount: str = "0.01"
    max_transaction_amount: str = "100000.00"
    
    # Query limits
    default_page_size: int = 20
    max_page_size: int = 100
    
    # Payment gateway configuration
    gateway_base_url: str = "https://api.paystack.co"
    gateway_secret_key: str = ""  # WALLET_LEDGER_GATEWAY_SECRET_KEY env var
    gateway_timeout: float = 10.0
    gateway_callback_url: Optional[str] = None
    webhook_secret: str = ""  # Empty = use gateway_secret_key
    
    # method -> "credit" | "debit"; merged over the built-in table
    payment_method_directions: Dict[str, str] = {}
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # PII encryption configuration
    encryption_enabled: bool = False  # Must opt-in
    encryption_master_key: str = ""
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "WALLET_LEDGER_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def effective_webhook_secret(self) -> str:
        """Webhook signatures are keyed with the gateway secret unless overridden"""
        return self.webhook_secret or self.gateway_secret_key


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
