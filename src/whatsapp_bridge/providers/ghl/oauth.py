"""
CRM OAuth Credential Manager

Keeps each tenant's CRM access token usable:
- proactive refresh when the token expires within TOKEN_REFRESH_HORIZON
- reactive refresh when a call still comes back 401 (one retry per call)
- authorization-code exchange at install time

Refresh failure is fatal for the current operation; the tenant has to
re-authorize the app.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx

from basecore.settings import Settings
from whatsapp_bridge.exceptions import AuthenticationError, ConfigurationError, CrmError, UpstreamError
from whatsapp_bridge.persistence.models import Tenant, utcnow
from whatsapp_bridge.persistence.repo import BridgeRepository
from whatsapp_bridge.providers.base import error_message, response_json
from whatsapp_bridge.providers.ghl.client import GhlClient

logger = logging.getLogger(__name__)

TOKEN_REFRESH_HORIZON = timedelta(minutes=5)


class CredentialManager:
    """
    Hands out authenticated CRM clients per tenant.

    Refreshes for the same tenant are single-flighted within this process;
    separate processes may still refresh concurrently.
    """

    _refresh_locks: dict[str, asyncio.Lock] = {}

    def __init__(
        self,
        repo: BridgeRepository,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.repo = repo
        self.settings = settings
        self._transport = transport

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(tenant_id)
        if lock is None:
            lock = self._refresh_locks[tenant_id] = asyncio.Lock()
        return lock

    @staticmethod
    def needs_refresh(tenant: Tenant, now: datetime | None = None) -> bool:
        """True if the access token is missing or expires within the horizon."""
        if not tenant.access_token:
            return True
        if tenant.token_expires_at is None:
            return False
        now = now or utcnow()
        return tenant.token_expires_at - now <= TOKEN_REFRESH_HORIZON

    async def get_client(self, tenant: Tenant) -> GhlClient:
        """Return a client with a usable token for ``tenant``."""
        if not tenant.has_credentials:
            raise ConfigurationError(
                f"Tenant {tenant.id} has no CRM credentials",
                code="MISSING_CREDENTIALS",
                details={"tenant": tenant.id},
            )

        if self.needs_refresh(tenant):
            logger.info("CRM token near expiry, refreshing", extra={"tenant": tenant.id})
            access_token = await self.refresh(tenant)
        else:
            access_token = self.repo.get_access_token(tenant)

        async def on_unauthorized() -> str:
            return await self.refresh(tenant, stale_access_token=client.access_token)

        client = GhlClient(
            access_token=access_token,
            base_url=self.settings.GHL_API_BASE_URL,
            api_version=self.settings.GHL_API_VERSION,
            timeout=self.settings.CRM_TIMEOUT_SECONDS,
            on_unauthorized=on_unauthorized,
            transport=self._transport,
        )
        return client

    async def refresh(self, tenant: Tenant, stale_access_token: str | None = None) -> str:
        """
        Refresh the tenant's token pair and persist it.

        Args:
            tenant: Tenant to refresh
            stale_access_token: Token the CRM just rejected; if the stored
                token differs, another task already refreshed and it is reused

        Returns:
            The access token to use
        """
        async with self._lock_for(tenant.id):
            self.repo.refresh_tenant(tenant)
            current = self.repo.get_access_token(tenant)

            if stale_access_token is not None:
                if current and current != stale_access_token:
                    return current
            elif not self.needs_refresh(tenant):
                return current

            refresh_token = self.repo.get_refresh_token(tenant)
            if not refresh_token:
                raise ConfigurationError(
                    f"Tenant {tenant.id} has no refresh token",
                    code="MISSING_REFRESH_TOKEN",
                    details={"tenant": tenant.id},
                )

            try:
                data = await self._token_request(
                    {
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "user_type": tenant.user_type or "Location",
                    }
                )
            except CrmError as e:
                logger.error(
                    f"Failed to refresh CRM tokens: {e}",
                    extra={"tenant": tenant.id, "kind": e.kind},
                )
                raise AuthenticationError(
                    "Failed to refresh CRM authentication; re-authorization required",
                    code="REFRESH_FAILED",
                    details={"tenant": tenant.id},
                ) from e

            access_token, new_refresh, expires_at = self._parse_token_response(data)
            self.repo.update_tenant_tokens(tenant, access_token, new_refresh, expires_at)

            logger.info(
                "Refreshed CRM tokens",
                extra={"tenant": tenant.id, "expires_at": expires_at.isoformat() if expires_at else None},
            )
            return access_token

    async def exchange_code(self, code: str) -> Tenant:
        """
        Exchange an OAuth authorization code at install time.

        Creates or updates the tenant for the installing location.
        """
        params = {"grant_type": "authorization_code", "code": code, "user_type": "Location"}
        if self.settings.GHL_REDIRECT_URI:
            params["redirect_uri"] = self.settings.GHL_REDIRECT_URI

        try:
            data = await self._token_request(params)
        except CrmError as e:
            raise AuthenticationError(f"Authorization code exchange failed: {e}", code="EXCHANGE_FAILED") from e

        location_id = data.get("locationId")
        if not location_id:
            raise ConfigurationError(
                "Token response has no locationId; only location-level installs are supported",
                code="MISSING_LOCATION",
            )

        access_token, refresh_token, expires_at = self._parse_token_response(data)
        tenant = self.repo.upsert_tenant(
            tenant_id=location_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
            company_id=data.get("companyId"),
            user_type=data.get("userType"),
        )
        logger.info("Tenant installed", extra={"tenant": tenant.id})
        return tenant

    async def _token_request(self, params: dict[str, str]) -> dict[str, Any]:
        client_id = self.settings.GHL_CLIENT_ID
        client_secret = self.settings.GHL_CLIENT_SECRET
        if not client_id or not client_secret:
            raise ConfigurationError("GHL_CLIENT_ID and GHL_CLIENT_SECRET must be set", code="MISSING_OAUTH_APP")

        form = {"client_id": client_id, "client_secret": client_secret, **params}

        async with httpx.AsyncClient(
            base_url=self.settings.GHL_API_BASE_URL,
            timeout=self.settings.CRM_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    "/oauth/token",
                    data=form,
                    headers={"Accept": "application/json"},
                )
            except httpx.TimeoutException as e:
                raise CrmError("crm token request timed out", kind=UpstreamError.TIMEOUT) from e
            except httpx.RequestError as e:
                raise CrmError(f"crm token request failed: {e}", kind=UpstreamError.NETWORK) from e

        data = response_json(response)
        if response.status_code >= 400:
            raise CrmError.from_status(response.status_code, error_message(data), details=data)
        return data

    @staticmethod
    def _parse_token_response(data: dict[str, Any]) -> tuple[str, str | None, datetime | None]:
        access_token = data.get("access_token")
        if not access_token:
            raise AuthenticationError("Token response has no access_token", code="BAD_TOKEN_RESPONSE")

        expires_in = data.get("expires_in")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return access_token, data.get("refresh_token"), expires_at
