"""
Configuration settings for the marketplace.

Values come from environment variables with sensible defaults and are
validated once on load.
"""

import os
from typing import Optional, Dict, Any
from decimal import Decimal


class Settings:
    """
    Configuration settings for the marketplace.

    Supports environment variables and provides sensible defaults.
    """

    def __init__(self):
        """Initialize settings from environment variables."""
        # Server configuration
        self.rest_host = os.getenv("REST_HOST", "0.0.0.0")
        self.rest_port = int(os.getenv("REST_PORT", "4000"))
        self.websocket_host = os.getenv("WEBSOCKET_HOST", "localhost")
        self.websocket_port = int(os.getenv("WEBSOCKET_PORT", "8765"))

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_file = os.getenv("LOG_FILE", "logs/gridmatch.log")
        self.audit_log_file = os.getenv("AUDIT_LOG_FILE", "logs/audit.log")

        # Market
        self.default_region = os.getenv("DEFAULT_REGION", "region-1")
        self.auto_match = os.getenv("AUTO_MATCH", "true").lower() == "true"
        # Whose selling price buyers' meter readings are requested at
        self.operator_user_id = os.getenv("OPERATOR_USER_ID", "operator")

        # Order validation
        self.min_quantity_kwh = Decimal(os.getenv("MIN_QUANTITY_KWH", "0.001"))
        self.max_quantity_kwh = Decimal(os.getenv("MAX_QUANTITY_KWH", "100000"))
        self.min_price_cents = int(os.getenv("MIN_PRICE_CENTS", "1"))
        self.max_price_cents = int(os.getenv("MAX_PRICE_CENTS", "100000"))

        # Receipt notary
        self.notary_mode = os.getenv("NOTARY_MODE", "mock").lower()
        self.notary_url = os.getenv("NOTARY_URL", "")
        self.notary_api_key = os.getenv("NOTARY_API_KEY") or None
        self.notary_timeout_seconds = float(os.getenv("NOTARY_TIMEOUT_SECONDS", "10"))

        # Performance monitoring
        self.enable_performance_monitoring = os.getenv("ENABLE_PERFORMANCE_MONITORING", "true").lower() == "true"

        # Security
        self.enable_cors = os.getenv("ENABLE_CORS", "true").lower() == "true"
        self.cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")

        # Debug mode
        self.debug = os.getenv("DEBUG", "false").lower() == "true"

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (secrets omitted)."""
        return {
            "rest_host": self.rest_host,
            "rest_port": self.rest_port,
            "websocket_host": self.websocket_host,
            "websocket_port": self.websocket_port,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "audit_log_file": self.audit_log_file,
            "default_region": self.default_region,
            "auto_match": self.auto_match,
            "operator_user_id": self.operator_user_id,
            "min_quantity_kwh": str(self.min_quantity_kwh),
            "max_quantity_kwh": str(self.max_quantity_kwh),
            "min_price_cents": self.min_price_cents,
            "max_price_cents": self.max_price_cents,
            "notary_mode": self.notary_mode,
            "notary_url": self.notary_url,
            "notary_timeout_seconds": self.notary_timeout_seconds,
            "enable_performance_monitoring": self.enable_performance_monitoring,
            "enable_cors": self.enable_cors,
            "cors_origins": self.cors_origins,
            "debug": self.debug,
        }

    def validate(self) -> None:
        """Validate configuration settings."""
        errors = []

        if not (1 <= self.rest_port <= 65535):
            errors.append(f"Invalid REST port: {self.rest_port}")

        if not (1 <= self.websocket_port <= 65535):
            errors.append(f"Invalid WebSocket port: {self.websocket_port}")

        if not self.default_region:
            errors.append("Default region cannot be empty")

        if not self.operator_user_id:
            errors.append("Operator user ID cannot be empty")

        if self.min_quantity_kwh <= 0:
            errors.append(f"Min quantity must be positive: {self.min_quantity_kwh}")

        if self.max_quantity_kwh <= self.min_quantity_kwh:
            errors.append(f"Max quantity must be greater than min quantity: {self.max_quantity_kwh} <= {self.min_quantity_kwh}")

        if self.min_price_cents <= 0:
            errors.append(f"Min price must be positive: {self.min_price_cents}")

        if self.max_price_cents < self.min_price_cents:
            errors.append(f"Max price must not be below min price: {self.max_price_cents} < {self.min_price_cents}")

        if self.notary_mode not in ("mock", "http"):
            errors.append(f"Notary mode must be 'mock' or 'http': {self.notary_mode}")

        if self.notary_mode == "http" and not self.notary_url:
            errors.append("NOTARY_URL is required when NOTARY_MODE is 'http'")

        if self.notary_timeout_seconds <= 0:
            errors.append(f"Notary timeout must be positive: {self.notary_timeout_seconds}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment variables.

    Returns:
        New settings instance
    """
    global _settings
    _settings = Settings()
    _settings.validate()
    return _settings
