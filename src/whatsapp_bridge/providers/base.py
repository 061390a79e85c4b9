"""
Provider Base

Shared types for the gateway and CRM HTTP clients.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx


@dataclass
class ProviderResponse:
    """
    Response from the gateway after sending a message.
    """

    message_id: str | None = None
    status: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


def response_json(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; anything else becomes {"raw": text}."""
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text} if response.text else {}
    if isinstance(data, dict):
        return data
    return {"data": data}


def error_message(data: dict[str, Any], default: str = "Unknown error") -> str:
    """Best human-readable error from an upstream error body."""
    nested = data.get("response")
    if isinstance(nested, dict) and nested.get("message"):
        message = nested["message"]
        return "; ".join(map(str, message)) if isinstance(message, list) else str(message)
    return str(data.get("message") or data.get("error") or data.get("raw") or default)
