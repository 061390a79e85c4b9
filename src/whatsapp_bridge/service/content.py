"""
Message Content Extraction

Turns a gateway message body into the text and attachment URLs posted to the
CRM.
"""

import logging
from dataclasses import dataclass, field

from whatsapp_bridge.contracts.webhooks import MessageData
from whatsapp_bridge.routing.identifiers import extract_phone_from_jid, is_group_jid

logger = logging.getLogger(__name__)

UNSUPPORTED_TEXT = "User sent an unsupported message type"

# message type -> (fallback text, caption allowed)
MEDIA_FALLBACKS: dict[str, tuple[str, bool]] = {
    "imageMessage": ("Received an image", True),
    "videoMessage": ("Received a video", True),
    "audioMessage": ("Received an audio message", False),
    "documentMessage": ("Received a document", True),
}


@dataclass
class ExtractedContent:
    """Text and attachments of one inbound message."""

    text: str
    attachments: list[str] = field(default_factory=list)
    message_type: str | None = None
    supported: bool = True


def _detect_type(data: MessageData) -> str | None:
    if data.message_type:
        return data.message_type
    # Older gateway builds omit messageType; fall back to the body's keys
    for key in ("conversation", "extendedTextMessage", *MEDIA_FALLBACKS):
        if key in data.message:
            return key
    return None


def extract_content(data: MessageData) -> ExtractedContent:
    """
    Extract text and attachments from a messages.upsert data block.

    Captions win over the fallback text. Group messages are prefixed with
    the sender's name and number.
    """
    message = data.message
    message_type = _detect_type(data)
    attachments: list[str] = []
    supported = True

    if message_type == "conversation":
        text = message.get("conversation") or ""
    elif message_type == "extendedTextMessage":
        text = (message.get("extendedTextMessage") or {}).get("text") or ""
    elif message_type in MEDIA_FALLBACKS:
        fallback, caption_allowed = MEDIA_FALLBACKS[message_type]
        media = message.get(message_type) or {}
        caption = media.get("caption") if caption_allowed else None
        text = caption or fallback
        if media.get("url"):
            attachments.append(media["url"])
    else:
        logger.warning(f"Unsupported gateway message type: {message_type}")
        text = UNSUPPORTED_TEXT
        supported = False

    if is_group_jid(data.key.remote_jid):
        sender_name = data.push_name or "Unknown"
        sender_number = extract_phone_from_jid(data.key.participant or data.key.remote_jid)
        text = f"{sender_name} (+{sender_number}):\n\n{text}"

    return ExtractedContent(
        text=text.strip(),
        attachments=attachments,
        message_type=message_type,
        supported=supported,
    )
