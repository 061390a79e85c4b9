"""
Pytest fixtures for bridge tests.
"""

import json
from datetime import timedelta
from typing import Any, Callable

import httpx
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.db import create_db_engine
from basecore.settings import Settings
from whatsapp_bridge.persistence.models import BridgeBase, ConnectionState, utcnow
from whatsapp_bridge.persistence.repo import BridgeRepository, CorrelationStore
from whatsapp_bridge.providers.ghl.oauth import CredentialManager

CRM_BASE_URL = "https://crm.test"
GATEWAY_URL = "https://gateway.test"
PROVIDER_ID = "provider-1"


class FakeApi:
    """
    Route table behind an httpx.MockTransport.

    Routes map (method, path) to a JSON body, a (status, body) tuple, a
    list of those (consumed in order) or a callable taking the request.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, response: Any) -> None:
        self.routes[(method.upper(), path)] = response

    def _respond(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not routed"})
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, tuple):
            status, body = route
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=route)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._respond)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> dict[str, Any]:
        return json.loads(request.content)


@pytest.fixture(autouse=True)
def _reset_refresh_locks():
    CredentialManager._refresh_locks.clear()
    yield
    CredentialManager._refresh_locks.clear()


@pytest.fixture
def settings():
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        REDIS_URL=None,
        GHL_CLIENT_ID="client-id",
        GHL_CLIENT_SECRET="client-secret",
        GHL_API_BASE_URL=CRM_BASE_URL,
        GHL_CONVERSATION_PROVIDER_ID=PROVIDER_ID,
        GHL_REDIRECT_URI=None,
        EVOLUTION_WEBHOOK_API_KEY=None,
        BRIDGE_ENCRYPTION_KEY=None,
    )


@pytest.fixture
def engine():
    """In-memory SQLite shared across sessions."""
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    BridgeBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repo(db):
    return BridgeRepository(db)


@pytest.fixture
def correlations(db):
    return CorrelationStore(db)


@pytest.fixture
def tenant(repo):
    """Installed tenant with a token valid for an hour."""
    return repo.upsert_tenant(
        tenant_id="loc-1",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=utcnow() + timedelta(hours=1),
        company_id="company-1",
        user_type="Location",
    )


@pytest.fixture
def make_instance(repo, tenant) -> Callable:
    def _make(instance_id="inst-1", state=ConnectionState.OPEN, tenant_id=None, created_at=None):
        return repo.create_instance(
            instance_id=instance_id,
            tenant_id=tenant_id or tenant.id,
            api_url=GATEWAY_URL,
            api_key="gw-key",
            state=state,
            created_at=created_at,
        )

    return _make


@pytest.fixture
def instance(make_instance):
    """Connected gateway instance of the default tenant."""
    return make_instance()


@pytest.fixture
def crm_api():
    return FakeApi()


@pytest.fixture
def gateway_api():
    return FakeApi()


@pytest.fixture
def upsert_payload():
    """Gateway messages.upsert for a private text message."""
    return {
        "event": "messages.upsert",
        "instance": "inst-1",
        "data": {
            "key": {
                "remoteJid": "5511999999999@s.whatsapp.net",
                "fromMe": False,
                "id": "M1",
            },
            "pushName": "Jane",
            "message": {"conversation": "hi"},
            "messageType": "conversation",
            "messageTimestamp": 1700000000,
        },
    }
