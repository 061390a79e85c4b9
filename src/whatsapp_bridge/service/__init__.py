"""
Bridge Service Layer

Routers for both webhook directions and the status reconciler.
"""

from whatsapp_bridge.service.inbound_router import InboundRouter
from whatsapp_bridge.service.outbound_router import OutboundRouter, media_type_for_url
from whatsapp_bridge.service.status_reconciler import StatusReconciler, map_gateway_status

__all__ = [
    "InboundRouter",
    "OutboundRouter",
    "StatusReconciler",
    "map_gateway_status",
    "media_type_for_url",
]
