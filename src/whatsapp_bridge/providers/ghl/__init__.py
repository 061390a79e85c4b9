"""LeadConnector (HighLevel) CRM provider."""

from whatsapp_bridge.providers.ghl.client import GhlClient
from whatsapp_bridge.providers.ghl.oauth import TOKEN_REFRESH_HORIZON, CredentialManager

__all__ = [
    "GhlClient",
    "CredentialManager",
    "TOKEN_REFRESH_HORIZON",
]
