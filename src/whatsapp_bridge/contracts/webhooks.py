"""
Webhook Payload Models

Pydantic models for both webhook receivers. Gateway events are parsed into one
model per event type; anything that does not validate becomes an UnknownEvent
and is ignored by the routers.
"""

import logging
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from whatsapp_bridge.contracts.event_types import GatewayEventType, normalize_event_name

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Gateway (Evolution API) webhooks
# =============================================================================


class MessageKey(_Payload):
    """Identifies a message on the gateway."""

    remote_jid: str = Field("", alias="remoteJid")
    from_me: bool = Field(False, alias="fromMe")
    id: str = ""
    participant: str | None = None


class MessageData(_Payload):
    """`data` block of a messages.upsert event."""

    key: MessageKey
    push_name: str | None = Field(None, alias="pushName")
    message: dict[str, Any] = Field(default_factory=dict)
    message_type: str | None = Field(None, alias="messageType")
    message_timestamp: int | None = Field(None, alias="messageTimestamp")

    @field_validator("message", mode="before")
    @classmethod
    def _message_or_empty(cls, value: Any) -> Any:
        return value or {}

    @field_validator("message_timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        # Baileys sometimes serializes Long as {"low": ..., "high": ...}
        if isinstance(value, dict):
            return value.get("low")
        if isinstance(value, str):
            return int(value) if value.isdecimal() else None
        return value


class ConnectionData(_Payload):
    """`data` block of a connection.update event."""

    state: str


class StatusData(_Payload):
    """
    `data` block of a messages.update event.

    Accepts the flat shape {keyId|messageId, remoteJid, fromMe, status} as well
    as the nested {key: {...}, update: {status}} shape.
    """

    message_id: str
    remote_jid: str = ""
    from_me: bool = False
    status: str | int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        key = value.get("key") or {}
        update = value.get("update") or {}
        from_me = value.get("fromMe")
        if from_me is None:
            from_me = key.get("fromMe") or False
        status = value.get("status")
        if status is None:
            status = update.get("status")
        return {
            "message_id": value.get("keyId") or value.get("messageId") or key.get("id"),
            "remote_jid": value.get("remoteJid") or key.get("remoteJid") or "",
            "from_me": from_me,
            "status": status,
        }


class MessageUpsertEvent(_Payload):
    event: str
    instance: str
    data: MessageData


class ConnectionUpdateEvent(_Payload):
    event: str
    instance: str
    data: ConnectionData


class MessageStatusEvent(_Payload):
    event: str
    instance: str
    data: StatusData


class UnknownEvent(_Payload):
    event: str = ""
    instance: str = ""
    reason: str = "unsupported_event"


GatewayEvent = Union[MessageUpsertEvent, ConnectionUpdateEvent, MessageStatusEvent, UnknownEvent]

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    GatewayEventType.MESSAGES_UPSERT.value: MessageUpsertEvent,
    GatewayEventType.CONNECTION_UPDATE.value: ConnectionUpdateEvent,
    GatewayEventType.MESSAGES_UPDATE.value: MessageStatusEvent,
}


def parse_gateway_event(payload: dict[str, Any]) -> GatewayEvent:
    """
    Parse a gateway webhook into its typed event.

    Never raises: unknown event names and invalid shapes yield UnknownEvent.
    """
    if not isinstance(payload, dict):
        return UnknownEvent(reason="invalid_payload")

    event = normalize_event_name(payload.get("event"))
    instance = payload.get("instance") or ""
    if not isinstance(instance, str):
        instance = str(instance)

    model = _EVENT_MODELS.get(event)
    if model is None:
        return UnknownEvent(event=event, instance=instance)

    try:
        return model.model_validate({**payload, "event": event, "instance": instance})
    except ValidationError as e:
        logger.warning(
            "Invalid gateway webhook payload",
            extra={"event_type": event, "instance": instance, "errors": e.error_count()},
        )
        return UnknownEvent(event=event, instance=instance, reason="invalid_payload")


# =============================================================================
# CRM webhooks
# =============================================================================


class CrmOutboundWebhook(_Payload):
    """
    Conversation-provider webhook sent by the CRM when an agent (or workflow)
    sends a message to a contact.
    """

    type: str
    location_id: str | None = Field(None, alias="locationId")
    contact_id: str | None = Field(None, alias="contactId")
    phone: str | None = None
    message: str | None = None
    attachments: list[str] = Field(default_factory=list)
    message_id: str | None = Field(None, alias="messageId")
    conversation_provider_id: str | None = Field(None, alias="conversationProviderId")
    user_id: str | None = Field(None, alias="userId")

    @field_validator("attachments", mode="before")
    @classmethod
    def _attachments_or_empty(cls, value: Any) -> Any:
        return value or []

    @property
    def has_content(self) -> bool:
        return bool(self.message) or bool(self.attachments)


class WorkflowActionData(_Payload):
    """`data` block of a CRM workflow action: text, or a file URL with optional caption."""

    instance_id: str | None = Field(None, alias="instanceId")
    message: str | None = None
    url: str | None = None
    caption: str | None = None

    @field_validator("instance_id", mode="before")
    @classmethod
    def _instance_id_as_text(cls, value: Any) -> Any:
        # The workflow builder sends numeric-looking ids as numbers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def action_type(self) -> str:
        return "send_file" if self.url else "send_message"


class WorkflowActionRequest(_Payload):
    """
    Custom workflow action posted by the CRM.

    The location and contact phone travel in the `locationid` and
    `contactphone` headers, not in the body.
    """

    data: WorkflowActionData