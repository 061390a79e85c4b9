"""
CRM API Client

Client for the LeadConnector (HighLevel) v2 API: contacts, conversations,
inbound messages and message status.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from whatsapp_bridge.exceptions import AuthenticationError, CrmError, UpstreamError
from whatsapp_bridge.providers.base import error_message, response_json

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://services.leadconnectorhq.com"
DEFAULT_API_VERSION = "2021-07-28"

# Returns a fresh access token
TokenRefresher = Callable[[], Awaitable[str]]


class GhlClient:
    """
    Authenticated CRM client for one tenant.

    On a 401 the client asks ``on_unauthorized`` for a new token and retries
    the call exactly once.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 15.0,
        on_unauthorized: TokenRefresher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self._on_unauthorized = on_unauthorized
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GhlClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Version": self.api_version,
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retried: bool = False,
    ) -> dict[str, Any]:
        """Make an authenticated API request, refreshing the token once on 401."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.access_token}"}

        try:
            response = await client.request(method, path, json=json_data, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise CrmError(f"crm timeout: {method} {path}", kind=UpstreamError.TIMEOUT) from e
        except httpx.RequestError as e:
            raise CrmError(f"crm request failed: {e}", kind=UpstreamError.NETWORK) from e

        if response.status_code == 401:
            if self._on_unauthorized is not None and not retried:
                logger.info("CRM returned 401, refreshing token and retrying", extra={"path": path})
                self.access_token = await self._on_unauthorized()
                return await self._request(method, path, json_data, params, retried=True)
            raise AuthenticationError(
                "CRM rejected the access token",
                code="401",
                details=response_json(response),
            )

        data = response_json(response)
        if response.status_code >= 400:
            raise CrmError.from_status(response.status_code, error_message(data), details=data)
        return data

    # =========================================================================
    # Contacts
    # =========================================================================

    async def upsert_contact(
        self,
        location_id: str,
        phone: str,
        name: str | None = None,
        source: str = "WhatsApp",
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create or update a contact keyed by phone. Returns the contact."""
        payload: dict[str, Any] = {
            "locationId": location_id,
            "phone": phone,
            "source": source,
        }
        if name:
            payload["name"] = name
        if tags:
            payload["tags"] = tags

        data = await self._request("POST", "/contacts/upsert", payload)
        return data.get("contact") or {}

    async def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        try:
            data = await self._request("GET", f"/contacts/{contact_id}")
        except CrmError as e:
            if e.kind == UpstreamError.NOT_FOUND:
                return None
            raise
        return data.get("contact")

    async def find_contact_by_phone(self, location_id: str, phone: str) -> dict[str, Any] | None:
        data = await self._request(
            "GET",
            "/contacts/",
            params={"locationId": location_id, "query": phone},
        )
        contacts = data.get("contacts") or []
        for contact in contacts:
            if contact.get("phone") == phone:
                return contact
        return contacts[0] if contacts else None

    async def remove_contact_tags(self, contact_id: str, tags: list[str]) -> dict[str, Any]:
        return await self._request("DELETE", f"/contacts/{contact_id}/tags", {"tags": tags})

    # =========================================================================
    # Conversations
    # =========================================================================

    async def search_conversation(self, location_id: str, contact_id: str) -> str | None:
        """Id of the contact's existing conversation, if any."""
        data = await self._request(
            "GET",
            "/conversations/search",
            params={"locationId": location_id, "contactId": contact_id},
        )
        conversations = data.get("conversations") or []
        return conversations[0].get("id") if conversations else None

    async def create_conversation(self, location_id: str, contact_id: str) -> str:
        data = await self._request(
            "POST",
            "/conversations/",
            {"locationId": location_id, "contactId": contact_id},
        )
        conversation_id = (data.get("conversation") or {}).get("id") or data.get("id")
        if not conversation_id:
            raise CrmError("crm error: conversation create returned no id", kind=UpstreamError.SERVER_ERROR, details=data)
        return conversation_id

    async def add_inbound_message(
        self,
        conversation_id: str,
        conversation_provider_id: str | None,
        message: str,
        attachments: list[str] | None = None,
        date: datetime | None = None,
        alt_id: str | None = None,
    ) -> dict[str, Any]:
        """Post a message received from the contact into a conversation."""
        payload: dict[str, Any] = {
            "type": "SMS",
            "conversationId": conversation_id,
            "message": message,
            "direction": "inbound",
        }
        if conversation_provider_id:
            payload["conversationProviderId"] = conversation_provider_id
        if attachments:
            payload["attachments"] = attachments
        if date:
            payload["date"] = date.isoformat()
        if alt_id:
            payload["altId"] = alt_id

        return await self._request("POST", "/conversations/messages/inbound", payload)

    async def update_message_status(
        self,
        message_id: str,
        status: str,
        error: str | None = None,
    ) -> dict[str, Any]:
        """Set a provider message's status: sent, delivered, read or failed."""
        payload: dict[str, Any] = {"status": status}
        if error:
            payload["error"] = {"code": "1", "type": "saas", "message": error}
        return await self._request("PUT", f"/conversations/messages/{message_id}/status", payload)
