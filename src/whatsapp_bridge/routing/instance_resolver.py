"""
Instance Resolver

Picks the gateway instance an outbound CRM message is sent through.

Order:
1. the instance named by the contact's `whatsapp-instance:<id>` tag, if it
   exists and belongs to the tenant
2. the tenant's only instance
3. the oldest-provisioned instance when the tenant has several

Workflow actions only ever use an open instance (resolve_open).
"""

import logging
from typing import Any, Iterable

from whatsapp_bridge.persistence.models import GatewayInstance
from whatsapp_bridge.persistence.repo import BridgeRepository

logger = logging.getLogger(__name__)

INSTANCE_TAG_PREFIX = "whatsapp-instance:"


def instance_tag(instance_id: str) -> str:
    """Contact tag recording which instance a contact last wrote from."""
    return f"{INSTANCE_TAG_PREFIX}{instance_id}"


def instance_id_from_tags(tags: Iterable[str] | None) -> str | None:
    """Instance id from the first instance tag, if any."""
    for tag in tags or ():
        if isinstance(tag, str) and tag.startswith(INSTANCE_TAG_PREFIX):
            value = tag[len(INSTANCE_TAG_PREFIX):].strip()
            if value:
                return value
    return None


class InstanceResolver:
    """Resolves the sending instance for a tenant and contact."""

    def __init__(self, repo: BridgeRepository):
        self.repo = repo

    def resolve(
        self,
        tenant_id: str,
        contact: dict[str, Any] | None = None,
    ) -> GatewayInstance | None:
        """
        Resolve the gateway instance for an outbound message.

        Args:
            tenant_id: CRM location id
            contact: CRM contact record (may carry instance tags)

        Returns:
            The instance, or None if the tenant has none
        """
        tagged_id = instance_id_from_tags((contact or {}).get("tags"))
        if tagged_id:
            instance = self.repo.get_instance(tagged_id)
            if instance is not None and instance.tenant_id == tenant_id:
                logger.debug(
                    "Resolved instance from contact tag",
                    extra={"tenant": tenant_id, "instance": instance.id},
                )
                return instance
            logger.info(
                "Contact tag names an unknown instance, falling back",
                extra={"tenant": tenant_id, "instance": tagged_id},
            )

        instances = self.repo.get_instances_for_tenant(tenant_id)
        if not instances:
            logger.warning(f"No gateway instance for tenant {tenant_id}")
            return None

        if len(instances) > 1:
            logger.debug(
                "Tenant has several instances, using the oldest",
                extra={"tenant": tenant_id, "instance": instances[0].id, "count": len(instances)},
            )
        return instances[0]

    def resolve_open(
        self,
        tenant_id: str,
        preferred_id: str | None = None,
    ) -> GatewayInstance | None:
        """
        Resolve a connected instance for a workflow send.

        The preferred instance is used when it belongs to the tenant and is
        open; otherwise the oldest open instance of the tenant.
        """
        if preferred_id:
            instance = self.repo.get_instance(preferred_id)
            if instance is not None and instance.tenant_id == tenant_id and instance.is_open:
                return instance

        for instance in self.repo.get_instances_for_tenant(tenant_id):
            if instance.is_open:
                return instance

        logger.warning(f"No open gateway instance for tenant {tenant_id}")
        return None
