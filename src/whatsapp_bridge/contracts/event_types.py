"""
Gateway Event Types

Event names the Evolution API posts to the bridge webhook.
"""

from enum import Enum


class GatewayEventType(str, Enum):
    """Webhook events the bridge understands."""

    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    CONNECTION_UPDATE = "connection.update"


def normalize_event_name(event: object) -> str:
    """
    Normalize an event name.

    The gateway sends "messages.upsert" by default and "MESSAGES_UPSERT"
    when webhooks are split by event.
    """
    if not isinstance(event, str):
        return ""
    return event.strip().lower().replace("_", ".")
