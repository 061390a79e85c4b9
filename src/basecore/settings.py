"""
Bridge Settings

Environment-driven configuration shared by the webhook app, the routers and the CLI.
"""

import functools
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the WhatsApp bridge."""

    # ==========================================================================
    # Infrastructure
    # ==========================================================================

    DATABASE_URL: str = "sqlite:///./bridge.db"

    # Optional: enables inbound duplicate suppression
    REDIS_URL: Optional[str] = None

    # ==========================================================================
    # CRM (LeadConnector / HighLevel)
    # ==========================================================================

    GHL_CLIENT_ID: Optional[str] = None
    GHL_CLIENT_SECRET: Optional[str] = None
    GHL_API_BASE_URL: str = "https://services.leadconnectorhq.com"
    GHL_API_VERSION: str = "2021-07-28"
    GHL_CONVERSATION_PROVIDER_ID: Optional[str] = None
    GHL_REDIRECT_URI: Optional[str] = None
    # Shared secret expected on workflow-action calls (unset = not checked)
    GHL_WORKFLOW_ACTION_TOKEN: Optional[str] = None
    CRM_TIMEOUT_SECONDS: float = 15.0

    # ==========================================================================
    # Gateway (Evolution API)
    # ==========================================================================

    # Deployment key expected on incoming gateway webhooks (unset = not checked)
    EVOLUTION_WEBHOOK_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    INBOUND_DEDUPE_TTL_SECONDS: int = 86400

    # Public URL the gateway should post webhooks to (CLI set-webhook)
    PUBLIC_WEBHOOK_URL: Optional[str] = None

    # ==========================================================================
    # General
    # ==========================================================================

    # Fernet key for tokens and API keys at rest
    BRIDGE_ENCRYPTION_KEY: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
