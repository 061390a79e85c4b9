"""
Tests for the CRM credential lifecycle.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from whatsapp_bridge.exceptions import AuthenticationError, ConfigurationError, CrmError
from whatsapp_bridge.persistence.models import utcnow
from whatsapp_bridge.providers.ghl.client import GhlClient
from whatsapp_bridge.providers.ghl.oauth import TOKEN_REFRESH_HORIZON, CredentialManager


def token_response(access="access-2", refresh="refresh-2", expires_in=86399, **extra):
    return {"access_token": access, "refresh_token": refresh, "expires_in": expires_in, **extra}


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.fixture
def manager(repo, settings, crm_api):
    return CredentialManager(repo, settings, transport=crm_api.transport)


class TestNeedsRefresh:
    """Tests for the proactive refresh horizon."""

    def test_valid_token(self, tenant):
        """Test a token with an hour left is kept."""
        assert CredentialManager.needs_refresh(tenant) is False

    def test_within_horizon(self, tenant):
        """Test a token expiring inside the horizon is refreshed."""
        tenant.token_expires_at = utcnow() + TOKEN_REFRESH_HORIZON - timedelta(seconds=1)
        assert CredentialManager.needs_refresh(tenant) is True

    def test_expired(self, tenant):
        """Test an expired token is refreshed."""
        tenant.token_expires_at = utcnow() - timedelta(minutes=1)
        assert CredentialManager.needs_refresh(tenant) is True

    def test_unknown_expiry(self, tenant):
        """Test a token without expiry is used until the CRM rejects it."""
        tenant.token_expires_at = None
        assert CredentialManager.needs_refresh(tenant) is False


class TestCredentialManager:
    """Tests for CredentialManager."""

    @pytest.mark.asyncio
    async def test_get_client_uses_stored_token(self, manager, tenant, crm_api):
        """Test no refresh happens for a valid token."""
        client = await manager.get_client(tenant)

        assert isinstance(client, GhlClient)
        assert client.access_token == "access-1"
        assert crm_api.calls("POST", "/oauth/token") == []

    @pytest.mark.asyncio
    async def test_proactive_refresh(self, manager, tenant, repo, crm_api, db):
        """Test a token near expiry is refreshed and persisted before use."""
        tenant.token_expires_at = utcnow() + timedelta(minutes=2)
        db.commit()
        crm_api.add("POST", "/oauth/token", token_response())

        client = await manager.get_client(tenant)

        assert client.access_token == "access-2"
        assert repo.get_access_token(tenant) == "access-2"
        assert repo.get_refresh_token(tenant) == "refresh-2"
        assert tenant.token_expires_at > utcnow() + timedelta(hours=23)

        sent = form(crm_api.calls("POST", "/oauth/token")[0])
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "refresh-1"
        assert sent["client_id"] == "client-id"
        assert sent["client_secret"] == "client-secret"

    @pytest.mark.asyncio
    async def test_reactive_refresh_retries_once(self, manager, tenant, repo, crm_api):
        """Test a 401 triggers one refresh and the call is retried with the new token."""

        def contact(request):
            if request.headers["Authorization"] == "Bearer access-1":
                return (401, {"message": "Invalid JWT"})
            return {"contact": {"id": "c1"}}

        crm_api.add("GET", "/contacts/c1", contact)
        crm_api.add("POST", "/oauth/token", token_response())

        client = await manager.get_client(tenant)
        async with client:
            result = await client.get_contact("c1")

        assert result == {"id": "c1"}
        assert len(crm_api.calls("POST", "/oauth/token")) == 1
        assert len(crm_api.calls("GET", "/contacts/c1")) == 2
        assert repo.get_access_token(tenant) == "access-2"

    @pytest.mark.asyncio
    async def test_second_401_raises(self, manager, tenant, crm_api):
        """Test a call still rejected after refresh is not retried again."""
        crm_api.add("GET", "/contacts/c1", (401, {"message": "Invalid JWT"}))
        crm_api.add("POST", "/oauth/token", token_response())

        client = await manager.get_client(tenant)
        async with client:
            with pytest.raises(AuthenticationError):
                await client.get_contact("c1")

        assert len(crm_api.calls("GET", "/contacts/c1")) == 2
        assert len(crm_api.calls("POST", "/oauth/token")) == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_is_fatal(self, manager, tenant, repo, crm_api, db):
        """Test a rejected refresh token raises AuthenticationError and keeps the old tokens."""
        tenant.token_expires_at = utcnow() - timedelta(minutes=1)
        db.commit()
        crm_api.add("POST", "/oauth/token", (400, {"error": "invalid_grant"}))

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.get_client(tenant)

        assert exc_info.value.code == "REFRESH_FAILED"
        assert repo.get_access_token(tenant) == "access-1"

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, manager, tenant, db):
        """Test a tenant without refresh token cannot be refreshed."""
        tenant.refresh_token = None
        tenant.token_expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(ConfigurationError):
            await manager.get_client(tenant)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, manager, tenant, db):
        """Test a tenant with no tokens is a configuration error."""
        tenant.access_token = None
        tenant.refresh_token = None
        db.commit()

        with pytest.raises(ConfigurationError) as exc_info:
            await manager.get_client(tenant)

        assert exc_info.value.code == "MISSING_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_flight(self, manager, tenant, crm_api):
        """Test concurrent 401 refreshes for a tenant hit the token endpoint once."""
        crm_api.add("POST", "/oauth/token", token_response())

        tokens = await asyncio.gather(
            manager.refresh(tenant, stale_access_token="access-1"),
            manager.refresh(tenant, stale_access_token="access-1"),
        )

        assert tokens == ["access-2", "access-2"]
        assert len(crm_api.calls("POST", "/oauth/token")) == 1

    @pytest.mark.asyncio
    async def test_exchange_code_installs_tenant(self, manager, repo, crm_api):
        """Test the install flow creates the tenant from the token response."""
        crm_api.add(
            "POST",
            "/oauth/token",
            token_response(access="new-access", refresh="new-refresh", locationId="loc-9", companyId="co-9", userType="Location"),
        )

        tenant = await manager.exchange_code("auth-code")

        assert tenant.id == "loc-9"
        assert tenant.company_id == "co-9"
        assert repo.get_access_token(tenant) == "new-access"
        sent = form(crm_api.calls("POST", "/oauth/token")[0])
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_exchange_code_without_location(self, manager, crm_api):
        """Test company-level installs are rejected."""
        crm_api.add("POST", "/oauth/token", token_response(companyId="co-9"))

        with pytest.raises(ConfigurationError):
            await manager.exchange_code("auth-code")


class TestGhlClient:
    """Tests for CRM client error handling."""

    @pytest.mark.asyncio
    async def test_sends_version_and_bearer(self, crm_api):
        """Test every request carries the API version and bearer token."""
        crm_api.add("POST", "/contacts/upsert", {"contact": {"id": "c1"}})

        async with GhlClient("tok", base_url="https://crm.test", transport=crm_api.transport) as client:
            contact = await client.upsert_contact("loc-1", "+5511999999999", name="Jane")

        request = crm_api.requests[0]
        assert contact["id"] == "c1"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Version"] == "2021-07-28"
        assert crm_api.body(request)["source"] == "WhatsApp"

    @pytest.mark.asyncio
    async def test_server_error_classified(self, crm_api):
        """Test 5xx responses raise a retryable CrmError."""
        crm_api.add("PUT", "/conversations/messages/m1/status", (503, {"message": "unavailable"}))

        async with GhlClient("tok", base_url="https://crm.test", transport=crm_api.transport) as client:
            with pytest.raises(CrmError) as exc_info:
                await client.update_message_status("m1", "delivered")

        assert exc_info.value.kind == CrmError.SERVER_ERROR
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_get_contact_not_found(self, crm_api):
        """Test a missing contact returns None."""
        async with GhlClient("tok", base_url="https://crm.test", transport=crm_api.transport) as client:
            assert await client.get_contact("nope") is None
