"""
Outbound Router

Delivers CRM agent messages through the gateway (CRM -> gateway):
1. Filters webhook types and workflow echoes
2. Resolves the contact and the sending instance
3. Dispatches text or media through the instance
4. Marks the CRM message sent and records correlation entries

Runs after the webhook has been acknowledged; failures mark the CRM
message failed and are re-raised for the caller to log.
"""

import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from basecore.settings import Settings
from whatsapp_bridge.contracts.webhooks import CrmOutboundWebhook, WorkflowActionData
from whatsapp_bridge.exceptions import BridgeError, ConfigurationError, CrmError, InstanceNotReadyError
from whatsapp_bridge.persistence.models import GatewayInstance
from whatsapp_bridge.persistence.repo import BridgeRepository, CorrelationStore
from whatsapp_bridge.providers.base import ProviderResponse
from whatsapp_bridge.providers.evolution.client import EvolutionClient
from whatsapp_bridge.providers.ghl.client import GhlClient
from whatsapp_bridge.providers.ghl.oauth import CredentialManager
from whatsapp_bridge.routing.identifiers import digits_only
from whatsapp_bridge.routing.instance_resolver import InstanceResolver

logger = logging.getLogger(__name__)

# Trailing marker on messages the CRM re-emits from workflow actions
WORKFLOW_MARKER = "\f\f\f\f\f"

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp")
VIDEO_EXTENSIONS = ("mp4", "mov", "avi", "mkv")
AUDIO_EXTENSIONS = ("mp3", "ogg", "wav", "aac", "m4a")


def _url_path(url: str) -> str:
    return urlparse(url).path or url


def media_type_for_url(url: str) -> str:
    """
    Gateway media type from an attachment URL's extension.

    >>> media_type_for_url("https://cdn.example.com/a/photo.JPG")
    'image'
    >>> media_type_for_url("https://cdn.example.com/a/contract.pdf?sig=1")
    'document'
    """
    path = _url_path(url)
    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    if extension in IMAGE_EXTENSIONS:
        return "image"
    if extension in VIDEO_EXTENSIONS:
        return "video"
    if extension in AUDIO_EXTENSIONS:
        return "audio"
    return "document"


def file_name_for_url(url: str) -> str:
    return _url_path(url).rstrip("/").rsplit("/", 1)[-1] or "file"


class OutboundRouter:
    """Routes CRM outbound-message webhooks to a gateway instance."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        crm_transport: httpx.AsyncBaseTransport | None = None,
        gateway_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.settings = settings
        self.repo = BridgeRepository(db, settings.BRIDGE_ENCRYPTION_KEY)
        self.credentials = CredentialManager(self.repo, settings, transport=crm_transport)
        self.correlations = CorrelationStore(db)
        self.resolver = InstanceResolver(self.repo)
        self._gateway_transport = gateway_transport

    async def handle(self, webhook: CrmOutboundWebhook) -> dict[str, Any]:
        """
        Process one CRM outbound webhook.

        Returns:
            Processing result dict

        Raises:
            ConfigurationError: Unknown tenant or missing credentials
            AuthenticationError: CRM token could not be refreshed
            InstanceNotReadyError: Resolved instance is not connected
            GatewayError: The gateway rejected or did not answer the send
        """
        result: dict[str, Any] = {
            "crm_message_id": webhook.message_id,
            "location_id": webhook.location_id,
        }

        if webhook.type != "SMS" or not webhook.has_content:
            logger.debug(
                f"Ignoring CRM webhook type {webhook.type}",
                extra={"crm_message_id": webhook.message_id},
            )
            return {**result, "status": "ignored", "reason": "unsupported_type"}

        if webhook.message and webhook.message.endswith(WORKFLOW_MARKER) and not webhook.user_id:
            logger.debug("Skipping workflow-originated message", extra={"crm_message_id": webhook.message_id})
            return {**result, "status": "skipped", "reason": "workflow_marker"}

        tenant = self.repo.get_tenant(webhook.location_id) if webhook.location_id else None
        if tenant is None:
            raise ConfigurationError(
                f"Unknown location: {webhook.location_id}",
                code="UNKNOWN_TENANT",
                details={"location_id": webhook.location_id},
            )

        crm = await self.credentials.get_client(tenant)
        async with crm:
            contact = await self._find_contact(crm, tenant.id, webhook)

            instance = self.resolver.resolve(tenant.id, contact)
            if instance is None:
                logger.warning(
                    "No gateway instance to send through",
                    extra={"tenant": tenant.id, "crm_message_id": webhook.message_id},
                )
                return {**result, "status": "ignored", "warning": "no_instance_for_tenant"}

            result["instance"] = instance.id
            number = digits_only(webhook.phone or (contact or {}).get("phone"))

            try:
                if not instance.is_open:
                    raise InstanceNotReadyError(instance.id, instance.state)
                if not number:
                    raise BridgeError("No phone number to send to", code="NO_PHONE")
                responses = await self._dispatch(instance, number, webhook.message, webhook.attachments)
            except BridgeError as e:
                logger.error(
                    f"Outbound dispatch failed: {e}",
                    extra={"instance": instance.id, "crm_message_id": webhook.message_id, "code": e.code},
                )
                await self._mark_status(crm, webhook.message_id, "failed", error=str(e))
                raise

            await self._mark_status(crm, webhook.message_id, "sent")

        gateway_ids = [r.message_id for r in responses if r.message_id]
        recorded = 0
        if webhook.message_id:
            for gateway_id in gateway_ids:
                if self.correlations.record(gateway_id, webhook.message_id, instance.id, contact_hint=number):
                    recorded += 1

        logger.info(
            "Delivered CRM message through gateway",
            extra={
                "instance": instance.id,
                "crm_message_id": webhook.message_id,
                "gateway_message_ids": gateway_ids,
            },
        )
        return {
            **result,
            "status": "sent",
            "gateway_message_ids": gateway_ids,
            "correlations_recorded": recorded,
        }

    async def handle_workflow_action(
        self,
        location_id: str,
        contact_phone: str,
        action: WorkflowActionData,
    ) -> dict[str, Any]:
        """
        Send a CRM workflow action's message or file through an open instance.

        Runs inline, not after an acknowledgment; the CRM reads the
        {success, error} result. No correlation entry is written because
        workflow sends have no CRM message id.
        """
        context = {"tenant": location_id, "action_type": action.action_type}

        tenant = self.repo.get_tenant(location_id)
        if tenant is None:
            logger.warning(f"Workflow action for unknown location {location_id}", extra=context)
            return {"success": False, "error": "Location not found"}

        instance = self.resolver.resolve_open(tenant.id, action.instance_id)
        if instance is None:
            return {"success": False, "error": "No active WhatsApp instance"}

        number = digits_only(contact_phone)
        if not number:
            return {"success": False, "error": "Contact phone has no digits"}

        try:
            if action.url:
                responses = await self._dispatch(
                    instance, number, action.message, [action.url], file_name=action.caption
                )
            else:
                responses = await self._dispatch(instance, number, action.message, [])
        except BridgeError as e:
            logger.error(
                f"Workflow action failed: {e}",
                extra={**context, "instance": instance.id, "code": e.code},
            )
            return {"success": False, "error": str(e)}

        gateway_ids = [r.message_id for r in responses if r.message_id]
        logger.info(
            "Sent workflow action through gateway",
            extra={**context, "instance": instance.id, "gateway_message_ids": gateway_ids},
        )
        return {"success": True, "instance": instance.id, "gateway_message_ids": gateway_ids}

    async def _find_contact(
        self,
        crm: GhlClient,
        tenant_id: str,
        webhook: CrmOutboundWebhook,
    ) -> dict[str, Any] | None:
        """Contact record for instance-tag lookup; lookup failures fall back to no contact."""
        try:
            if webhook.contact_id:
                contact = await crm.get_contact(webhook.contact_id)
                if contact is not None:
                    return contact
            if webhook.phone:
                return await crm.find_contact_by_phone(tenant_id, webhook.phone)
        except CrmError as e:
            logger.warning(
                f"Contact lookup failed, resolving instance without tags: {e}",
                extra={"tenant": tenant_id, "contact_id": webhook.contact_id},
            )
        return None

    async def _dispatch(
        self,
        instance: GatewayInstance,
        number: str,
        message: str | None,
        attachments: list[str],
        file_name: str | None = None,
    ) -> list[ProviderResponse]:
        """Send text, or one media message per attachment with the caption on the first."""
        api_key = self.repo.get_instance_api_key(instance)
        if not api_key:
            raise ConfigurationError(f"Instance {instance.id} has no API key", code="MISSING_API_KEY")

        responses: list[ProviderResponse] = []
        async with EvolutionClient(
            api_url=instance.api_url,
            api_key=api_key,
            instance_name=instance.id,
            timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            transport=self._gateway_transport,
        ) as gateway:
            if attachments:
                for index, url in enumerate(attachments):
                    responses.append(
                        await gateway.send_media(
                            number=number,
                            media_type=media_type_for_url(url),
                            url=url,
                            caption=message if index == 0 else None,
                            file_name=file_name or file_name_for_url(url),
                        )
                    )
            else:
                responses.append(await gateway.send_text(number, message or ""))
        return responses

    async def _mark_status(
        self,
        crm: GhlClient,
        crm_message_id: str | None,
        status: str,
        error: str | None = None,
    ) -> None:
        """Best-effort CRM status update."""
        if not crm_message_id:
            return
        try:
            await crm.update_message_status(crm_message_id, status, error=error)
        except BridgeError as e:
            logger.warning(
                f"Failed to mark CRM message {status}: {e}",
                extra={"crm_message_id": crm_message_id},
            )
