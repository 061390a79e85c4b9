"""
Tests for delivery status reconciliation.
"""

import logging

import pytest

from whatsapp_bridge.contracts.webhooks import CrmOutboundWebhook
from whatsapp_bridge.service.inbound_router import InboundRouter
from whatsapp_bridge.service.outbound_router import OutboundRouter

STATUS_PATH = "/conversations/messages/crm-1/status"


def status_payload(gateway_id="G1", status="DELIVERY_ACK", from_me=True):
    return {
        "event": "messages.update",
        "instance": "inst-1",
        "data": {
            "keyId": gateway_id,
            "remoteJid": "5511999999999@s.whatsapp.net",
            "fromMe": from_me,
            "status": status,
        },
    }


@pytest.fixture
def crm(crm_api):
    crm_api.add("GET", "/contacts/c1", {"contact": {"id": "c1", "tags": []}})
    crm_api.add("PUT", STATUS_PATH, {"success": True})
    return crm_api


@pytest.fixture
def inbound(db, settings, crm):
    return InboundRouter(db, settings, crm_transport=crm.transport)


def statuses(crm) -> list[str]:
    return [crm.body(r)["status"] for r in crm.calls("PUT", STATUS_PATH)]


class TestStatusReconciler:
    """Tests for messages.update handling."""

    @pytest.mark.asyncio
    async def test_correlation_miss(self, inbound, instance, crm, caplog):
        """Test an uncorrelated status makes no CRM call and logs one line."""
        with caplog.at_level(logging.DEBUG, logger="whatsapp_bridge.service.status_reconciler"):
            result = await inbound.handle(status_payload(gateway_id="unknown"))

        assert result["status"] == "skipped"
        assert result["reason"] == "correlation_miss"
        assert crm.requests == []
        misses = [r for r in caplog.records if r.name == "whatsapp_bridge.service.status_reconciler"]
        assert len(misses) == 1

    @pytest.mark.asyncio
    async def test_delivered(self, inbound, instance, correlations, crm):
        """Test a delivery receipt updates the correlated CRM message."""
        correlations.record("G1", "crm-1", instance.id)

        result = await inbound.handle(status_payload())

        assert result["status"] == "updated"
        assert result["crm_status"] == "delivered"
        assert statuses(crm) == ["delivered"]

    @pytest.mark.asyncio
    async def test_not_from_me_ignored(self, inbound, instance, correlations, crm):
        """Test receipts for messages we did not send are ignored."""
        correlations.record("G1", "crm-1", instance.id)

        result = await inbound.handle(status_payload(from_me=False))

        assert result["status"] == "ignored"
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_pending_not_forwarded(self, inbound, instance, correlations, crm):
        """Test statuses without CRM equivalent are not forwarded."""
        correlations.record("G1", "crm-1", instance.id)

        result = await inbound.handle(status_payload(status="PENDING"))

        assert result["reason"] == "unmapped_status"
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_odd_digit_status_not_forwarded(self, inbound, instance, correlations, crm):
        """Test a status made of non-ASCII digit characters is unmapped, not an error."""
        correlations.record("G1", "crm-1", instance.id)

        result = await inbound.handle(status_payload(status="²"))

        assert result["reason"] == "unmapped_status"
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_crm_failure_swallowed(self, inbound, instance, correlations, crm):
        """Test a CRM error is reported, not raised."""
        correlations.record("G1", "crm-1", instance.id)
        crm.add("PUT", STATUS_PATH, (500, {"message": "boom"}))

        result = await inbound.handle(status_payload(status="READ"))

        assert result["status"] == "failed"


class TestSendThenDeliver:
    """End-to-end: outbound send followed by a delivery receipt."""

    @pytest.mark.asyncio
    async def test_sent_then_delivered_once(self, db, settings, instance, crm, gateway_api, inbound):
        """Test the CRM message goes sent -> delivered with one update each."""
        gateway_api.add("POST", "/message/sendText/inst-1", {"key": {"id": "G1"}})
        outbound = OutboundRouter(db, settings, crm_transport=crm.transport, gateway_transport=gateway_api.transport)

        sent = await outbound.handle(
            CrmOutboundWebhook.model_validate(
                {
                    "type": "SMS",
                    "locationId": "loc-1",
                    "contactId": "c1",
                    "phone": "+5511999999999",
                    "message": "hello",
                    "messageId": "crm-1",
                    "conversationProviderId": "provider-1",
                    "userId": "user-1",
                }
            )
        )
        assert sent["gateway_message_ids"] == ["G1"]

        delivered = await inbound.handle(status_payload(status="DELIVERY_ACK"))

        assert delivered["status"] == "updated"
        assert statuses(crm) == ["sent", "delivered"]
