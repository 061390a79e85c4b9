"""
Bridge Contracts

Webhook payload models and event names for both receivers.
"""

from whatsapp_bridge.contracts.event_types import GatewayEventType, normalize_event_name
from whatsapp_bridge.contracts.webhooks import (
    ConnectionUpdateEvent,
    CrmOutboundWebhook,
    GatewayEvent,
    MessageStatusEvent,
    MessageUpsertEvent,
    UnknownEvent,
    WorkflowActionData,
    WorkflowActionRequest,
    parse_gateway_event,
)

__all__ = [
    "GatewayEventType",
    "normalize_event_name",
    "ConnectionUpdateEvent",
    "CrmOutboundWebhook",
    "GatewayEvent",
    "MessageStatusEvent",
    "MessageUpsertEvent",
    "UnknownEvent",
    "WorkflowActionData",
    "WorkflowActionRequest",
    "parse_gateway_event",
]
