"""
Evolution API Client

Client for Evolution API (Baileys-based WhatsApp Web gateway).
Uses REST API to send messages, read connection state and register webhooks.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any

import httpx

from whatsapp_bridge.exceptions import GatewayError, UpstreamError
from whatsapp_bridge.providers.base import ProviderResponse, error_message, response_json

logger = logging.getLogger(__name__)

# Events the bridge subscribes to on each instance
DEFAULT_WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "MESSAGES_UPDATE", "CONNECTION_UPDATE"]

MEDIA_TYPES = ("image", "video", "audio", "document")


class EvolutionClient:
    """
    Evolution API client bound to one instance.

    Authenticates with the static deployment key in the "apikey" header.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        instance_name: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Evolution API client.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: API key for authentication
            instance_name: Name of the Evolution instance
            timeout: HTTP request timeout
            transport: Optional httpx transport (tests)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "EvolutionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        client = await self._get_client()

        try:
            response = await client.request(method.upper(), endpoint, json=json_data)
        except httpx.TimeoutException as e:
            logger.error(
                f"Evolution API request timed out: {method} {endpoint}",
                extra={"instance": self.instance_name},
            )
            raise GatewayError(f"gateway timeout: {e}", kind=UpstreamError.TIMEOUT) from e
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}", extra={"instance": self.instance_name})
            raise GatewayError(f"gateway request failed: {e}", kind=UpstreamError.NETWORK) from e

        response_data = response_json(response)

        if response.status_code >= 400:
            logger.error(
                f"Evolution API error: [{method.upper()} {endpoint}] {response.status_code}",
                extra={"instance": self.instance_name, "body": response_data},
            )
            raise GatewayError.from_status(
                response.status_code,
                error_message(response_data),
                details=response_data,
            )

        return response_data

    @staticmethod
    def _message_id(response: dict[str, Any]) -> str | None:
        key = response.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])
        return response.get("messageId") or response.get("id")

    async def send_text(self, number: str, text: str) -> ProviderResponse:
        """Send a text message via Evolution API."""
        endpoint = f"/message/sendText/{self.instance_name}"

        payload: dict[str, Any] = {
            "number": number,
            "text": text,
        }

        response = await self._make_request("POST", endpoint, payload)
        message_id = self._message_id(response)

        logger.info(
            "Sent text message via Evolution API",
            extra={"to": number, "message_id": message_id, "instance": self.instance_name},
        )

        return ProviderResponse(
            message_id=message_id,
            status=response.get("status"),
            raw_response=response,
        )

    async def send_media(
        self,
        number: str,
        media_type: str,
        url: str,
        caption: str | None = None,
        file_name: str | None = None,
    ) -> ProviderResponse:
        """Send an image, video, audio or document by URL."""
        endpoint = f"/message/sendMedia/{self.instance_name}"

        payload: dict[str, Any] = {
            "number": number,
            "mediatype": media_type if media_type in MEDIA_TYPES else "document",
            "media": url,
        }
        if caption:
            payload["caption"] = caption
        if file_name:
            payload["fileName"] = file_name

        response = await self._make_request("POST", endpoint, payload)
        message_id = self._message_id(response)

        logger.info(
            "Sent media message via Evolution API",
            extra={
                "to": number,
                "media_type": payload["mediatype"],
                "message_id": message_id,
                "instance": self.instance_name,
            },
        )

        return ProviderResponse(
            message_id=message_id,
            status=response.get("status"),
            raw_response=response,
        )

    async def get_connection_state(self) -> str | None:
        """
        Get the instance connection state ("open", "connecting", "close").

        Evolution v2 nests the state under "instance"; v1 returns it flat.
        """
        endpoint = f"/instance/connectionState/{self.instance_name}"
        response = await self._make_request("GET", endpoint)

        instance = response.get("instance")
        if isinstance(instance, dict) and instance.get("state"):
            return instance["state"]
        return response.get("state")

    async def set_webhook(
        self,
        url: str,
        events: list[str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Point the instance's webhooks at the bridge."""
        endpoint = f"/webhook/set/{self.instance_name}"

        webhook: dict[str, Any] = {
            "enabled": True,
            "url": url,
            "events": events or DEFAULT_WEBHOOK_EVENTS,
            "byEvents": False,
            "base64": False,
        }
        if headers:
            webhook["headers"] = headers

        response = await self._make_request("POST", endpoint, {"webhook": webhook})

        logger.info(
            "Registered webhook on Evolution instance",
            extra={"instance": self.instance_name, "url": url},
        )
        return response
