"""
Evolution API Webhook Utilities

Helper functions for authenticating and routing Evolution API webhooks.
"""

import hmac
from typing import Any, Mapping


def extract_instance_name(payload: dict[str, Any]) -> str | None:
    """
    Extract instance name from webhook payload.

    This is used to route the webhook before full parsing.
    """
    instance = payload.get("instance") if isinstance(payload, dict) else None
    if isinstance(instance, str) and instance:
        return instance
    return None


def validate_api_key(request_headers: Mapping[str, str], expected_api_key: str) -> bool:
    """
    Validate API key from request headers.

    Evolution API can send API key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    """
    headers = {k.lower(): v for k, v in request_headers.items()}

    apikey_header = headers.get("apikey")
    if apikey_header and hmac.compare_digest(apikey_header, expected_api_key):
        return True

    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
        if hmac.compare_digest(token, expected_api_key):
            return True

    return False
