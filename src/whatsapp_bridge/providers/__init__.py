"""
Bridge Providers

HTTP clients for the two platforms:
- evolution: the WhatsApp gateway
- ghl: the CRM, plus OAuth credential management
"""

from whatsapp_bridge.providers.base import ProviderResponse

__all__ = ["ProviderResponse"]
