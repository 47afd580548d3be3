"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ComplianceConfig(BaseSettings):
    """Account compliance core configuration"""
    
    # Encryption configuration
    encryption_key: str = ""  # ACCOUNT_COMPLIANCE_ENCRYPTION_KEY env var
    encryption_salt: str = "salt"
    kdf_iterations: int = 10000
    
    # Audit configuration
    audit_max_detail_chars: int = 10000
    audit_max_depth: int = 32
    audit_default_page_size: int = 10
    audit_ip_address: str = "127.0.0.1"
    audit_user_agent: str = "AuditTrail/1.0"
    
    # Access control configuration
    default_role: str = "user"
    
    # Store configuration
    store_timeout_seconds: float = 5.0
    
    # Erasure configuration
    erasure_citation: str = "GDPR Article 17 (right to erasure)"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    class Config:
        env_prefix = "ACCOUNT_COMPLIANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ComplianceConfig()


def get_config() -> ComplianceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ComplianceConfig:
    """Reload configuration from environment"""
    global config
    config = ComplianceConfig()
    return config
