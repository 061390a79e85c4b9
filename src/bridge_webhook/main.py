"""
Bridge Webhook Service

FastAPI app that receives webhooks from the gateway and the CRM.

Responsibilities:
- Authenticate gateway webhooks (deployment API key)
- Run the synchronous pre-checks on CRM webhooks
- Return 200 quickly, then route in a background task
- Run CRM workflow actions inline
- Complete the CRM OAuth install flow
"""

import json
import logging
from typing import Any

import httpx
import redis.asyncio as aioredis
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from basecore.db import get_db, get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings
from whatsapp_bridge.contracts.webhooks import CrmOutboundWebhook, WorkflowActionRequest
from whatsapp_bridge.exceptions import BridgeError
from whatsapp_bridge.persistence.repo import BridgeRepository
from whatsapp_bridge.providers.evolution.webhook import extract_instance_name, validate_api_key
from whatsapp_bridge.providers.ghl.oauth import CredentialManager
from whatsapp_bridge.service.inbound_router import InboundRouter
from whatsapp_bridge.service.outbound_router import OutboundRouter

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="WhatsApp CRM Bridge",
    description="Bridges Evolution API WhatsApp instances and CRM conversations",
    version="1.0.0",
)


# =============================================================================
# Dependencies (overridable in tests)
# =============================================================================


def get_session_factory() -> sessionmaker:
    """Session factory for background tasks, which outlive the request session."""
    return get_sessionmaker()


def get_redis() -> aioredis.Redis | None:
    return get_redis_client()


def get_crm_transport() -> httpx.AsyncBaseTransport | None:
    return None


def get_gateway_transport() -> httpx.AsyncBaseTransport | None:
    return None


# =============================================================================
# Background continuations
# =============================================================================


async def process_gateway_webhook(
    payload: dict[str, Any],
    session_factory: sessionmaker,
    settings: Settings,
    redis_client: aioredis.Redis | None,
    crm_transport: httpx.AsyncBaseTransport | None,
) -> None:
    """Route one gateway webhook; errors are logged, never raised."""
    context = {"instance": payload.get("instance"), "event_type": payload.get("event")}
    db: Session = session_factory()
    try:
        router = InboundRouter(db, settings, redis_client=redis_client, crm_transport=crm_transport)
        result = await router.handle(payload)
        logger.debug("Processed gateway webhook", extra={**context, "result": result.get("status")})
    except BridgeError as e:
        logger.error(
            f"Failed to process gateway webhook: {e}",
            extra={**context, "code": e.code, "details": e.details},
        )
    except Exception as e:
        logger.error(f"Error processing gateway webhook: {e}", exc_info=True, extra=context)
    finally:
        db.close()


async def process_crm_webhook(
    webhook: CrmOutboundWebhook,
    session_factory: sessionmaker,
    settings: Settings,
    crm_transport: httpx.AsyncBaseTransport | None,
    gateway_transport: httpx.AsyncBaseTransport | None,
) -> None:
    """Route one CRM outbound webhook; errors are logged, never raised."""
    context = {"location_id": webhook.location_id, "crm_message_id": webhook.message_id}
    db: Session = session_factory()
    try:
        router = OutboundRouter(
            db,
            settings,
            crm_transport=crm_transport,
            gateway_transport=gateway_transport,
        )
        result = await router.handle(webhook)
        if result.get("warning"):
            logger.warning(f"CRM webhook not delivered: {result['warning']}", extra=context)
    except BridgeError as e:
        logger.error(
            f"Failed to deliver CRM message: {e}",
            extra={**context, "code": e.code, "details": e.details},
        )
    except Exception as e:
        logger.error(f"Error processing CRM webhook: {e}", exc_info=True, extra=context)
    finally:
        db.close()


# =============================================================================
# Routes
# =============================================================================


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "whatsapp-bridge"}


async def _json_body(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except ValueError:
        logger.warning("Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON")


@app.post("/webhooks/evolution")
async def receive_gateway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    redis_client: aioredis.Redis | None = Depends(get_redis),
    crm_transport: httpx.AsyncBaseTransport | None = Depends(get_crm_transport),
):
    """
    Receive a webhook from an Evolution API instance.

    Authenticates, then acknowledges and routes in the background.
    """
    if settings.EVOLUTION_WEBHOOK_API_KEY:
        if not validate_api_key(dict(request.headers), settings.EVOLUTION_WEBHOOK_API_KEY):
            logger.warning("Invalid Evolution API key")
            raise HTTPException(status_code=403, detail="Invalid API key")

    payload = await _json_body(request)
    if not isinstance(payload, dict) or not extract_instance_name(payload):
        logger.debug("Gateway webhook without instance")
        return {"status": "ignored", "reason": "no_instance"}

    background_tasks.add_task(
        process_gateway_webhook,
        payload,
        session_factory,
        settings,
        redis_client,
        crm_transport,
    )
    return {"status": "accepted"}


@app.post("/webhooks/ghl")
async def receive_crm_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    crm_transport: httpx.AsyncBaseTransport | None = Depends(get_crm_transport),
    gateway_transport: httpx.AsyncBaseTransport | None = Depends(get_gateway_transport),
):
    """
    Receive a conversation-provider webhook from the CRM.

    Wrong provider id, unknown location or a tenant without credentials is
    rejected with 400. Anything else is acknowledged and routed in the
    background.
    """
    payload = await _json_body(request)
    try:
        webhook = CrmOutboundWebhook.model_validate(payload)
    except ValidationError as e:
        logger.warning("Invalid CRM webhook payload", extra={"errors": e.error_count()})
        raise HTTPException(status_code=400, detail="Invalid payload")

    expected_provider = settings.GHL_CONVERSATION_PROVIDER_ID
    if expected_provider and webhook.conversation_provider_id != expected_provider:
        logger.error(
            "Conversation provider ID is wrong",
            extra={"conversation_provider_id": webhook.conversation_provider_id},
        )
        raise HTTPException(status_code=400, detail="Conversation provider ID is wrong")

    if not webhook.location_id:
        raise HTTPException(status_code=400, detail="Location ID is missing")

    tenant = BridgeRepository(db).get_tenant(webhook.location_id)
    if tenant is None or not tenant.has_credentials:
        logger.error(
            f"No credentials for location {webhook.location_id}",
            extra={"location_id": webhook.location_id},
        )
        raise HTTPException(status_code=400, detail="Location is not installed")

    background_tasks.add_task(
        process_crm_webhook,
        webhook,
        session_factory,
        settings,
        crm_transport,
        gateway_transport,
    )
    return {"status": "accepted"}


def _workflow_error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.post("/webhooks/workflow-action")
async def receive_workflow_action(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway_transport: httpx.AsyncBaseTransport | None = Depends(get_gateway_transport),
):
    """
    Run a CRM workflow action (send a message or a file to the contact).

    Location and contact phone come from the `locationid` and
    `contactphone` headers. Unlike the conversation webhooks this is
    processed inline and answers {success, error}.
    """
    if settings.GHL_WORKFLOW_ACTION_TOKEN:
        if not validate_api_key(dict(request.headers), settings.GHL_WORKFLOW_ACTION_TOKEN):
            logger.warning("Invalid workflow action token")
            return _workflow_error(403, "Invalid workflow token")

    location_id = request.headers.get("locationid")
    contact_phone = request.headers.get("contactphone")
    if not location_id:
        return _workflow_error(400, "Location ID is required in headers")
    if not contact_phone:
        return _workflow_error(400, "Contact phone is required in headers")

    body = await request.body()
    try:
        action = WorkflowActionRequest.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Invalid workflow action payload", extra={"errors": e.error_count()})
        return _workflow_error(400, "Invalid payload")

    if not action.data.instance_id:
        return _workflow_error(400, "Instance ID is required")
    if not action.data.message and not action.data.url:
        return _workflow_error(400, "Message or file URL is required")

    router = OutboundRouter(db, settings, gateway_transport=gateway_transport)
    try:
        return await router.handle_workflow_action(location_id, contact_phone, action.data)
    except Exception as e:
        logger.error(
            f"Error processing workflow action: {e}",
            exc_info=True,
            extra={"location_id": location_id},
        )
        return _workflow_error(500, "Internal server error while processing workflow action")


@app.get("/oauth/callback")
async def oauth_callback(
    code: str = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    crm_transport: httpx.AsyncBaseTransport | None = Depends(get_crm_transport),
):
    """Complete the CRM app install by exchanging the authorization code."""
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    repo = BridgeRepository(db, settings.BRIDGE_ENCRYPTION_KEY)
    manager = CredentialManager(repo, settings, transport=crm_transport)
    try:
        tenant = await manager.exchange_code(code)
    except BridgeError as e:
        logger.error(f"OAuth install failed: {e}", extra={"code": e.code})
        raise HTTPException(status_code=400, detail=str(e))

    return {"status": "installed", "location_id": tenant.id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8090)
