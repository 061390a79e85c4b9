"""
Bridge Repository

Repository pattern for bridge database operations: tenants, gateway
instances, and the correlation store.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from whatsapp_bridge.persistence.models import (
    ConnectionState,
    CorrelationEntry,
    GatewayInstance,
    Tenant,
    utcnow,
)
from whatsapp_bridge.persistence.secrets import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)


class BridgeRepository:
    """Repository for tenants and gateway instances."""

    def __init__(self, db: Session, encryption_key: str | None = None):
        self.db = db
        self.encryption_key = encryption_key

    # =========================================================================
    # Tenants
    # =========================================================================

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        return self.db.get(Tenant, tenant_id)

    def refresh_tenant(self, tenant: Tenant) -> Tenant:
        """Reload a tenant row (another request may have rotated its tokens)."""
        self.db.refresh(tenant)
        return tenant

    def upsert_tenant(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        company_id: str | None = None,
        user_type: str | None = None,
    ) -> Tenant:
        """Create or update a tenant after an OAuth code exchange."""
        tenant = self.get_tenant(tenant_id)
        if tenant is None:
            tenant = Tenant(id=tenant_id)
            self.db.add(tenant)

        if company_id:
            tenant.company_id = company_id
        if user_type:
            tenant.user_type = user_type
        self._set_tokens(tenant, access_token, refresh_token, token_expires_at)
        self.db.commit()
        return tenant

    def update_tenant_tokens(
        self,
        tenant: Tenant,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> Tenant:
        """Persist a refreshed token pair."""
        self._set_tokens(tenant, access_token, refresh_token, token_expires_at)
        self.db.commit()
        return tenant

    def _set_tokens(
        self,
        tenant: Tenant,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        tenant.access_token = encrypt_secret(access_token, self.encryption_key)
        if refresh_token:
            tenant.refresh_token = encrypt_secret(refresh_token, self.encryption_key)
        tenant.token_expires_at = token_expires_at
        tenant.updated_at = utcnow()

    def get_access_token(self, tenant: Tenant) -> str | None:
        return decrypt_secret(tenant.access_token, self.encryption_key)

    def get_refresh_token(self, tenant: Tenant) -> str | None:
        return decrypt_secret(tenant.refresh_token, self.encryption_key)

    # =========================================================================
    # Gateway instances
    # =========================================================================

    def get_instance(self, instance_id: str) -> GatewayInstance | None:
        return self.db.get(GatewayInstance, instance_id)

    def get_instances_for_tenant(self, tenant_id: str) -> list[GatewayInstance]:
        """All instances of a tenant, oldest-provisioned first."""
        return (
            self.db.query(GatewayInstance)
            .filter(GatewayInstance.tenant_id == tenant_id)
            .order_by(GatewayInstance.created_at.asc(), GatewayInstance.id.asc())
            .all()
        )

    def create_instance(
        self,
        instance_id: str,
        tenant_id: str,
        api_url: str,
        api_key: str,
        state: ConnectionState = ConnectionState.CONNECTING,
        name: str | None = None,
        created_at: datetime | None = None,
    ) -> GatewayInstance:
        instance = GatewayInstance(
            id=instance_id,
            tenant_id=tenant_id,
            name=name or instance_id,
            api_url=api_url,
            api_key=encrypt_secret(api_key, self.encryption_key),
            state=state.value,
        )
        if created_at:
            instance.created_at = created_at
        self.db.add(instance)
        self.db.commit()
        return instance

    def update_instance_state(self, instance: GatewayInstance, state: ConnectionState) -> GatewayInstance:
        instance.state = state.value
        instance.updated_at = utcnow()
        self.db.commit()
        return instance

    def get_instance_api_key(self, instance: GatewayInstance) -> str | None:
        return decrypt_secret(instance.api_key, self.encryption_key)

    def delete_instance(self, instance: GatewayInstance) -> None:
        """Remove an instance; its correlation entries cascade."""
        self.db.delete(instance)
        self.db.commit()


class CorrelationStore:
    """
    Gateway message id -> CRM message id.

    Insert-only. Uniqueness of the gateway message id is enforced by the
    database; a duplicate insert is a silent no-op.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        gateway_message_id: str,
        crm_message_id: str,
        instance_id: str,
        contact_hint: str | None = None,
    ) -> bool:
        """
        Record a correlation entry.

        Returns:
            True if a row was inserted, False if one already existed
        """
        if self.find_by_gateway_id(gateway_message_id) is not None:
            logger.debug(
                "Correlation already recorded",
                extra={"gateway_message_id": gateway_message_id},
            )
            return False

        self.db.add(
            CorrelationEntry(
                gateway_message_id=gateway_message_id,
                crm_message_id=crm_message_id,
                instance_id=instance_id,
                contact_phone=contact_hint,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent insert of the same id
            self.db.rollback()
            logger.debug(
                "Correlation inserted concurrently",
                extra={"gateway_message_id": gateway_message_id},
            )
            return False
        return True

    def find_by_gateway_id(self, gateway_message_id: str) -> CorrelationEntry | None:
        return (
            self.db.query(CorrelationEntry)
            .filter(CorrelationEntry.gateway_message_id == gateway_message_id)
            .first()
        )

    def count_for_instance(self, instance_id: str) -> int:
        return (
            self.db.query(CorrelationEntry)
            .filter(CorrelationEntry.instance_id == instance_id)
            .count()
        )

    def prune_older_than(self, cutoff: datetime) -> int:
        """
        Delete entries created before ``cutoff``.

        Retention sweep; only run on demand from the CLI.
        """
        deleted = (
            self.db.query(CorrelationEntry)
            .filter(CorrelationEntry.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Pruned correlation entries", extra={"deleted": deleted, "cutoff": cutoff.isoformat()})
        return deleted
