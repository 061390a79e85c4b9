"""
Status Reconciler

Propagates delivery and read receipts for messages the bridge sent
(gateway messages.update, fromMe) back onto the originating CRM message.
"""

import logging
from typing import Any

from whatsapp_bridge.contracts.webhooks import MessageStatusEvent
from whatsapp_bridge.exceptions import BridgeError
from whatsapp_bridge.persistence.models import GatewayInstance
from whatsapp_bridge.persistence.repo import CorrelationStore
from whatsapp_bridge.providers.ghl.oauth import CredentialManager

logger = logging.getLogger(__name__)

# Baileys WAMessageStatus codes
_STATUS_CODES: dict[int, str] = {
    0: "ERROR",
    1: "PENDING",
    2: "SERVER_ACK",
    3: "DELIVERY_ACK",
    4: "READ",
    5: "PLAYED",
}

_GATEWAY_TO_CRM: dict[str, str | None] = {
    "PENDING": None,
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
    "PLAYED": "read",
    "ERROR": "failed",
}

CRM_STATUSES = ("sent", "delivered", "read", "failed")


def map_gateway_status(value: str | int | None) -> str | None:
    """
    Map a gateway delivery status to the CRM vocabulary.

    Accepts status names, numeric codes (as int or digit string) and CRM
    words already in lowercase. Unknown values map to None.

    >>> map_gateway_status("DELIVERY_ACK")
    'delivered'
    >>> map_gateway_status(4)
    'read'
    >>> map_gateway_status("PENDING") is None
    True
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int):
        name = _STATUS_CODES.get(value)
    else:
        text = str(value).strip()
        if text in CRM_STATUSES:
            return text
        name = _STATUS_CODES.get(int(text)) if text.isdecimal() else text.upper()

    return _GATEWAY_TO_CRM.get(name) if name else None


class StatusReconciler:
    """Applies gateway status events to correlated CRM messages."""

    def __init__(self, correlations: CorrelationStore, credentials: CredentialManager):
        self.correlations = correlations
        self.credentials = credentials

    async def handle(self, event: MessageStatusEvent, instance: GatewayInstance) -> dict[str, Any]:
        """
        Process one messages.update event.

        Never raises for CRM failures; they are logged and reported in the
        result.
        """
        data = event.data
        result: dict[str, Any] = {"gateway_message_id": data.message_id}

        if not data.from_me:
            return {**result, "status": "ignored", "reason": "not_from_me"}

        entry = self.correlations.find_by_gateway_id(data.message_id)
        if entry is None:
            logger.info(
                "No correlation for status update",
                extra={"instance": instance.id, "gateway_message_id": data.message_id, "gateway_status": data.status},
            )
            return {**result, "status": "skipped", "reason": "correlation_miss"}

        crm_status = map_gateway_status(data.status)
        if crm_status is None:
            logger.debug(
                "Status has no CRM equivalent",
                extra={"gateway_message_id": data.message_id, "gateway_status": data.status},
            )
            return {**result, "status": "skipped", "reason": "unmapped_status"}

        result["crm_message_id"] = entry.crm_message_id
        result["crm_status"] = crm_status

        try:
            client = await self.credentials.get_client(instance.tenant)
            async with client:
                await client.update_message_status(entry.crm_message_id, crm_status)
        except BridgeError as e:
            logger.warning(
                f"Failed to update CRM message status: {e}",
                extra={
                    "instance": instance.id,
                    "gateway_message_id": data.message_id,
                    "crm_message_id": entry.crm_message_id,
                    "crm_status": crm_status,
                },
            )
            return {**result, "status": "failed", "error": str(e)}

        logger.info(
            "Updated CRM message status",
            extra={"crm_message_id": entry.crm_message_id, "crm_status": crm_status},
        )
        return {**result, "status": "updated"}
