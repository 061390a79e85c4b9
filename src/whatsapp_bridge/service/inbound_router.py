"""
Inbound Router

Processes gateway webhooks (gateway -> CRM):
1. Parses the event into its typed model
2. Resolves the gateway instance and its tenant
3. messages.upsert: echo check, dedupe, normalize, upsert contact,
   post the message into the contact's conversation
4. connection.update: persists the instance state
5. messages.update: hands off to the StatusReconciler
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
import redis.asyncio as aioredis
from sqlalchemy.orm import Session

from basecore.settings import Settings
from whatsapp_bridge.contracts.webhooks import (
    ConnectionUpdateEvent,
    MessageStatusEvent,
    MessageUpsertEvent,
    UnknownEvent,
    parse_gateway_event,
)
from whatsapp_bridge.exceptions import BridgeError
from whatsapp_bridge.persistence.models import GatewayInstance, parse_connection_state
from whatsapp_bridge.persistence.repo import BridgeRepository, CorrelationStore
from whatsapp_bridge.providers.ghl.client import GhlClient
from whatsapp_bridge.providers.ghl.oauth import CredentialManager
from whatsapp_bridge.routing.identifiers import extract_phone_from_jid, is_group_jid, is_lid_jid
from whatsapp_bridge.routing.instance_resolver import INSTANCE_TAG_PREFIX, instance_tag
from whatsapp_bridge.service.content import extract_content
from whatsapp_bridge.service.dedupe import InboundDeduplicator
from whatsapp_bridge.service.status_reconciler import StatusReconciler

logger = logging.getLogger(__name__)

# Epoch seconds stay below this until the year 5138; larger values are milliseconds
_MILLISECOND_THRESHOLD = 10**11


def message_date(timestamp: int | None) -> datetime | None:
    """
    UTC datetime of a gateway message timestamp.

    Accepts epoch seconds or milliseconds; values that cannot be converted
    give None so the message is still forwarded, just without a date.

    >>> message_date(1700000000).isoformat()
    '2023-11-14T22:13:20+00:00'
    >>> message_date(1700000000000).isoformat()
    '2023-11-14T22:13:20+00:00'
    >>> message_date(10**30) is None
    True
    """
    if not timestamp or timestamp < 0:
        return None
    seconds = timestamp / 1000 if timestamp >= _MILLISECOND_THRESHOLD else timestamp
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning(f"Unusable message timestamp: {timestamp}")
        return None


class InboundRouter:
    """
    Routes gateway webhooks.

    Responsibilities:
    - Forward customer messages to the CRM
    - Track instance connection state
    - Reconcile delivery status of messages the bridge sent
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        redis_client: aioredis.Redis | None = None,
        crm_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.settings = settings
        self.repo = BridgeRepository(db, settings.BRIDGE_ENCRYPTION_KEY)
        self.credentials = CredentialManager(self.repo, settings, transport=crm_transport)
        self.reconciler = StatusReconciler(CorrelationStore(db), self.credentials)
        self.deduplicator = InboundDeduplicator(redis_client, settings.INBOUND_DEDUPE_TTL_SECONDS)

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Process one gateway webhook payload.

        Args:
            payload: Raw webhook JSON

        Returns:
            Processing result dict
        """
        event = parse_gateway_event(payload)

        if isinstance(event, UnknownEvent):
            logger.debug(
                "Ignoring gateway event",
                extra={"event_type": event.event, "instance": event.instance, "reason": event.reason},
            )
            return {"status": "ignored", "reason": event.reason, "event": event.event}

        instance = self.repo.get_instance(event.instance)
        if instance is None:
            logger.warning(
                f"Webhook for unknown instance: {event.instance}",
                extra={"event_type": event.event},
            )
            return {"status": "ignored", "reason": "unknown_instance", "instance": event.instance}

        if isinstance(event, ConnectionUpdateEvent):
            return self.handle_connection_update(instance, event)
        if isinstance(event, MessageStatusEvent):
            return await self.reconciler.handle(event, instance)
        return await self.handle_message(instance, event)

    def handle_connection_update(
        self,
        instance: GatewayInstance,
        event: ConnectionUpdateEvent,
    ) -> dict[str, Any]:
        state = parse_connection_state(event.data.state)
        if state is None:
            logger.warning(
                f"Unknown connection state: {event.data.state}",
                extra={"instance": instance.id},
            )
            return {"status": "ignored", "reason": "unknown_state", "instance": instance.id}

        previous = instance.state
        self.repo.update_instance_state(instance, state)
        logger.info(
            f"Instance {instance.id} state changed to {state.value}",
            extra={"instance": instance.id, "previous_state": previous},
        )
        return {
            "status": "updated",
            "instance": instance.id,
            "state": state.value,
            "authorization": instance.authorization_status.value,
        }

    async def handle_message(
        self,
        instance: GatewayInstance,
        event: MessageUpsertEvent,
    ) -> dict[str, Any]:
        """
        Forward a customer message to the CRM.

        Raises:
            BridgeError: CRM credentials or API failure
        """
        data = event.data
        key = data.key
        result: dict[str, Any] = {"instance": instance.id, "gateway_message_id": key.id}

        # Our own sends come back as upserts too
        if key.from_me:
            return {**result, "status": "ignored", "reason": "from_me"}

        if await self.deduplicator.is_duplicate(instance.id, key.id):
            logger.debug("Duplicate gateway delivery", extra=result)
            return {**result, "status": "skipped", "reason": "duplicate"}

        phone = extract_phone_from_jid(key.remote_jid)
        if is_lid_jid(key.remote_jid):
            logger.warning(
                "Message from a linked-device id; CRM contact will not be dialable",
                extra={"instance": instance.id, "remote_jid": key.remote_jid},
            )
        if not phone:
            logger.warning("Message without a sender id", extra=result)
            return {**result, "status": "ignored", "reason": "no_sender"}

        content = extract_content(data)
        date = message_date(data.message_timestamp)
        tenant = instance.tenant

        client = await self.credentials.get_client(tenant)
        async with client:
            contact = await client.upsert_contact(
                location_id=tenant.id,
                phone=f"+{phone}",
                name=data.push_name if data.push_name and not is_group_jid(key.remote_jid) else phone,
                tags=[instance_tag(instance.id)],
            )
            contact_id = contact.get("id")
            await self._drop_stale_instance_tags(client, instance, contact)

            conversation_id = await client.search_conversation(tenant.id, contact_id)
            if not conversation_id:
                conversation_id = await client.create_conversation(tenant.id, contact_id)

            response = await client.add_inbound_message(
                conversation_id=conversation_id,
                conversation_provider_id=self.settings.GHL_CONVERSATION_PROVIDER_ID,
                message=content.text,
                attachments=content.attachments,
                date=date,
                alt_id=key.id or None,
            )

        logger.info(
            "Forwarded inbound message to CRM",
            extra={
                "instance": instance.id,
                "gateway_message_id": key.id,
                "contact_id": contact_id,
                "conversation_id": conversation_id,
                "message_type": content.message_type,
                "supported": content.supported,
            },
        )
        return {
            **result,
            "status": "processed",
            "phone": phone,
            "contact_id": contact_id,
            "conversation_id": conversation_id,
            "crm_message_id": response.get("messageId"),
            "supported": content.supported,
        }

    async def _drop_stale_instance_tags(
        self,
        client: GhlClient,
        instance: GatewayInstance,
        contact: dict[str, Any],
    ) -> None:
        """
        Remove instance tags other than the current one.

        The CRM merges tags on upsert, so a contact that wrote through another
        instance earlier still carries that tag. Best-effort.
        """
        current = instance_tag(instance.id)
        stale = [
            tag
            for tag in contact.get("tags") or []
            if isinstance(tag, str) and tag.startswith(INSTANCE_TAG_PREFIX) and tag != current
        ]
        if not stale or not contact.get("id"):
            return

        try:
            await client.remove_contact_tags(contact["id"], stale)
        except BridgeError as e:
            logger.warning(
                f"Failed to remove stale instance tags: {e}",
                extra={"instance": instance.id, "contact_id": contact["id"]},
            )
