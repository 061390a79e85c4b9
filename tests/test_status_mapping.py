"""
Tests for gateway -> CRM status mapping.
"""

import pytest

from whatsapp_bridge.service.status_reconciler import map_gateway_status


class TestMapGatewayStatus:
    """Tests for map_gateway_status."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("PENDING", None),
            ("SERVER_ACK", "sent"),
            ("DELIVERY_ACK", "delivered"),
            ("READ", "read"),
            ("PLAYED", "read"),
            ("ERROR", "failed"),
            ("delivery_ack", "delivered"),
        ],
    )
    def test_names(self, value, expected):
        """Test gateway status names."""
        assert map_gateway_status(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [(0, "failed"), (1, None), (2, "sent"), (3, "delivered"), (4, "read"), (5, "read"), ("3", "delivered")],
    )
    def test_numeric_codes(self, value, expected):
        """Test Baileys numeric status codes."""
        assert map_gateway_status(value) == expected

    @pytest.mark.parametrize("value", ["sent", "delivered", "read", "failed"])
    def test_crm_words_pass_through(self, value):
        """Test values already in CRM vocabulary are kept."""
        assert map_gateway_status(value) == value

    @pytest.mark.parametrize("value", [None, "", "SOMETHING", 42, True, "²", "3²", "99", -1])
    def test_unknown(self, value):
        """Test unknown values map to None."""
        assert map_gateway_status(value) is None

    def test_pure(self):
        """Test repeated calls give the same answer."""
        assert [map_gateway_status("READ") for _ in range(3)] == ["read"] * 3
