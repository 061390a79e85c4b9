"""
Bridge Persistence

SQLAlchemy models and repositories for the tables the bridge owns.
"""

from whatsapp_bridge.persistence.models import (
    AuthorizationStatus,
    BridgeBase,
    ConnectionState,
    CorrelationEntry,
    GatewayInstance,
    Tenant,
    parse_connection_state,
)
from whatsapp_bridge.persistence.repo import BridgeRepository, CorrelationStore

__all__ = [
    "AuthorizationStatus",
    "BridgeBase",
    "ConnectionState",
    "CorrelationEntry",
    "GatewayInstance",
    "Tenant",
    "parse_connection_state",
    "BridgeRepository",
    "CorrelationStore",
]
