"""
Bridge Database Models

Tables owned by the bridge:
- bridge_tenants: one row per CRM location, holds the OAuth credential pair
- bridge_instances: gateway instances, each belonging to one tenant
- bridge_correlations: gateway message id -> CRM message id, scoped to an instance
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

BridgeBase = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ConnectionState(str, Enum):
    """Gateway instance connection state, reported by connection.update webhooks."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class AuthorizationStatus(str, Enum):
    """Tenant-facing view of ConnectionState."""

    AUTHORIZED = "authorized"
    NOT_AUTHORIZED = "notAuthorized"


def parse_connection_state(state: str | None) -> ConnectionState | None:
    """Map a gateway state string to ConnectionState; unknown values give None."""
    if not state:
        return None
    value = str(state).strip().lower()
    if value in ("open", "authorized"):
        return ConnectionState.OPEN
    if value in ("close", "closed", "notauthorized"):
        return ConnectionState.CLOSE
    if value == "connecting":
        return ConnectionState.CONNECTING
    return None


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Tenant(BridgeBase, TimestampMixin):
    """
    A CRM location that installed the bridge.

    Tokens are Fernet-encrypted when BRIDGE_ENCRYPTION_KEY is set.
    """

    __tablename__ = "bridge_tenants"

    id = Column(String(100), primary_key=True)  # CRM locationId
    company_id = Column(String(100), nullable=True)
    user_type = Column(String(20), nullable=False, default="Location")
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    instances = relationship(
        "GatewayInstance",
        back_populates="tenant",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="GatewayInstance.created_at",
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token or self.refresh_token)


class GatewayInstance(BridgeBase, TimestampMixin):
    """
    One WhatsApp connection on the gateway.

    The primary key is the gateway instance name, which is also what
    incoming webhooks carry in their "instance" field.
    """

    __tablename__ = "bridge_instances"

    id = Column(String(100), primary_key=True)
    tenant_id = Column(
        String(100),
        ForeignKey("bridge_tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=True)  # Display name
    api_url = Column(String(255), nullable=False)
    api_key = Column(Text, nullable=False)  # Encrypted when a key is configured
    state = Column(String(20), nullable=False, default=ConnectionState.CONNECTING.value)

    tenant = relationship("Tenant", back_populates="instances")
    correlations = relationship(
        "CorrelationEntry",
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_bridge_instances_tenant_created", "tenant_id", "created_at"),)

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN.value

    @property
    def authorization_status(self) -> AuthorizationStatus:
        if self.is_open:
            return AuthorizationStatus.AUTHORIZED
        return AuthorizationStatus.NOT_AUTHORIZED


class CorrelationEntry(BridgeBase):
    """
    Links a message dispatched through the gateway to the CRM message it came from.

    Written once after a successful dispatch and never updated; status is
    pushed straight to the CRM. Rows go away with their instance.
    """

    __tablename__ = "bridge_correlations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_message_id = Column(String(100), nullable=False)
    crm_message_id = Column(String(191), nullable=False)
    instance_id = Column(
        String(100),
        ForeignKey("bridge_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    instance = relationship("GatewayInstance", back_populates="correlations")

    __table_args__ = (
        UniqueConstraint("gateway_message_id", name="uq_bridge_correlations_gateway_message_id"),
        Index("idx_bridge_correlations_crm_message_id", "crm_message_id"),
        Index("idx_bridge_correlations_instance_id", "instance_id"),
        Index("idx_bridge_correlations_created_at", "created_at"),
    )
