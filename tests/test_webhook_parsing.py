"""
Tests for webhook payload models and content extraction.
"""

import pytest

from whatsapp_bridge.contracts import (
    ConnectionUpdateEvent,
    CrmOutboundWebhook,
    MessageStatusEvent,
    MessageUpsertEvent,
    UnknownEvent,
    normalize_event_name,
    parse_gateway_event,
)
from whatsapp_bridge.service.content import UNSUPPORTED_TEXT, extract_content
from whatsapp_bridge.service.outbound_router import file_name_for_url, media_type_for_url


def upsert(message, message_type, remote_jid="5511999999999@s.whatsapp.net", **data):
    return parse_gateway_event(
        {
            "event": "messages.upsert",
            "instance": "inst-1",
            "data": {
                "key": {"remoteJid": remote_jid, "fromMe": False, "id": "M1", **data.pop("key", {})},
                "message": message,
                "messageType": message_type,
                **data,
            },
        }
    )


class TestParseGatewayEvent:
    """Tests for parse_gateway_event."""

    def test_event_names_normalized(self):
        """Test both event spellings are accepted."""
        assert normalize_event_name("MESSAGES_UPSERT") == "messages.upsert"
        assert normalize_event_name("connection.update") == "connection.update"
        assert normalize_event_name(None) == ""

    def test_message_upsert(self, upsert_payload):
        """Test a text message parses into MessageUpsertEvent."""
        event = parse_gateway_event(upsert_payload)

        assert isinstance(event, MessageUpsertEvent)
        assert event.instance == "inst-1"
        assert event.data.key.remote_jid == "5511999999999@s.whatsapp.net"
        assert event.data.key.from_me is False
        assert event.data.push_name == "Jane"
        assert event.data.message_timestamp == 1700000000

    def test_uppercase_event(self, upsert_payload):
        """Test MESSAGES_UPSERT is routed like messages.upsert."""
        upsert_payload["event"] = "MESSAGES_UPSERT"
        assert isinstance(parse_gateway_event(upsert_payload), MessageUpsertEvent)

    def test_long_timestamp(self, upsert_payload):
        """Test Long-shaped timestamps are unwrapped."""
        upsert_payload["data"]["messageTimestamp"] = {"low": 1700000000, "high": 0, "unsigned": False}
        assert parse_gateway_event(upsert_payload).data.message_timestamp == 1700000000

    def test_connection_update(self):
        """Test connection.update parses its state."""
        event = parse_gateway_event({"event": "connection.update", "instance": "inst-1", "data": {"state": "open"}})

        assert isinstance(event, ConnectionUpdateEvent)
        assert event.data.state == "open"

    def test_status_flat_shape(self):
        """Test the flat messages.update shape."""
        event = parse_gateway_event(
            {
                "event": "messages.update",
                "instance": "inst-1",
                "data": {"keyId": "G1", "remoteJid": "5511999999999@s.whatsapp.net", "fromMe": True, "status": "DELIVERY_ACK"},
            }
        )

        assert isinstance(event, MessageStatusEvent)
        assert event.data.message_id == "G1"
        assert event.data.from_me is True
        assert event.data.status == "DELIVERY_ACK"

    def test_status_nested_shape(self):
        """Test the nested key/update messages.update shape."""
        event = parse_gateway_event(
            {
                "event": "MESSAGES_UPDATE",
                "instance": "inst-1",
                "data": {"key": {"id": "G1", "fromMe": True, "remoteJid": "x@s.whatsapp.net"}, "update": {"status": 4}},
            }
        )

        assert isinstance(event, MessageStatusEvent)
        assert event.data.message_id == "G1"
        assert event.data.status == 4

    def test_unknown_event(self):
        """Test unsupported events become UnknownEvent."""
        event = parse_gateway_event({"event": "presence.update", "instance": "inst-1", "data": {}})

        assert isinstance(event, UnknownEvent)
        assert event.reason == "unsupported_event"

    def test_invalid_payload(self):
        """Test a known event with a broken body becomes UnknownEvent."""
        event = parse_gateway_event({"event": "messages.upsert", "instance": "inst-1", "data": {"message": {}}})

        assert isinstance(event, UnknownEvent)
        assert event.reason == "invalid_payload"

    def test_not_a_dict(self):
        """Test non-object payloads never raise."""
        assert isinstance(parse_gateway_event(["x"]), UnknownEvent)

    @pytest.mark.parametrize("event_name", [7, None, ["messages.upsert"], {"name": "x"}])
    def test_non_string_event_name(self, event_name):
        """Test a non-string event name is ignored instead of raising."""
        event = parse_gateway_event({"event": event_name, "instance": "inst-1", "data": {}})

        assert isinstance(event, UnknownEvent)
        assert event.event == ""


class TestExtractContent:
    """Tests for extract_content."""

    def test_conversation(self):
        """Test plain text messages."""
        assert extract_content(upsert({"conversation": "hi"}, "conversation").data).text == "hi"

    def test_extended_text(self):
        """Test extended text messages."""
        data = upsert({"extendedTextMessage": {"text": "see https://x.test"}}, "extendedTextMessage").data
        assert extract_content(data).text == "see https://x.test"

    @pytest.mark.parametrize(
        "message_type,fallback",
        [
            ("imageMessage", "Received an image"),
            ("videoMessage", "Received a video"),
            ("audioMessage", "Received an audio message"),
            ("documentMessage", "Received a document"),
        ],
    )
    def test_media_fallback(self, message_type, fallback):
        """Test media without caption uses the fallback text and keeps the URL."""
        data = upsert({message_type: {"url": "https://mmg.test/file"}}, message_type).data
        content = extract_content(data)

        assert content.text == fallback
        assert content.attachments == ["https://mmg.test/file"]

    def test_caption_wins(self):
        """Test a caption replaces the fallback text."""
        data = upsert({"imageMessage": {"caption": "my photo", "url": "https://mmg.test/i"}}, "imageMessage").data
        assert extract_content(data).text == "my photo"

    def test_unsupported(self):
        """Test unsupported types are forwarded with a notice."""
        content = extract_content(upsert({"stickerMessage": {}}, "stickerMessage").data)

        assert content.text == UNSUPPORTED_TEXT
        assert content.supported is False

    def test_group_prefix(self):
        """Test group messages carry the sender's name and number."""
        data = upsert(
            {"conversation": "hello all"},
            "conversation",
            remote_jid="120363123456789012@g.us",
            key={"participant": "5511888888888@s.whatsapp.net"},
            pushName="Bob",
        ).data

        assert extract_content(data).text == "Bob (+5511888888888):\n\nhello all"

    def test_type_detected_from_body(self):
        """Test messages without messageType are still recognized."""
        assert extract_content(upsert({"conversation": "hi"}, None).data).text == "hi"


class TestCrmWebhook:
    """Tests for the CRM outbound webhook model and media helpers."""

    def test_parse(self):
        """Test camelCase fields are mapped."""
        webhook = CrmOutboundWebhook.model_validate(
            {
                "type": "SMS",
                "locationId": "loc-1",
                "contactId": "c1",
                "phone": "+5511999999999",
                "message": "hello",
                "attachments": None,
                "messageId": "crm-1",
                "conversationProviderId": "provider-1",
            }
        )

        assert webhook.location_id == "loc-1"
        assert webhook.message_id == "crm-1"
        assert webhook.attachments == []
        assert webhook.has_content is True

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://cdn.test/a.jpg", "image"),
            ("https://cdn.test/a.WEBP", "image"),
            ("https://cdn.test/a.mov", "video"),
            ("https://cdn.test/a.ogg", "audio"),
            ("https://cdn.test/a.pdf", "document"),
            ("https://cdn.test/a.png?token=abc.def", "image"),
            ("https://cdn.test/noext", "document"),
        ],
    )
    def test_media_type_for_url(self, url, expected):
        """Test media type from the URL extension."""
        assert media_type_for_url(url) == expected

    def test_file_name_for_url(self):
        """Test file name from the URL path."""
        assert file_name_for_url("https://cdn.test/docs/contract.pdf?sig=1") == "contract.pdf"
        assert file_name_for_url("https://cdn.test/") == "file"
