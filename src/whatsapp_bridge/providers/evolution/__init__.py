"""Evolution API gateway provider."""

from whatsapp_bridge.providers.evolution.client import DEFAULT_WEBHOOK_EVENTS, EvolutionClient
from whatsapp_bridge.providers.evolution.webhook import extract_instance_name, validate_api_key

__all__ = [
    "DEFAULT_WEBHOOK_EVENTS",
    "EvolutionClient",
    "extract_instance_name",
    "validate_api_key",
]
