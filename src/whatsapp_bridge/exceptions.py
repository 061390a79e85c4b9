"""
Bridge Errors

Typed failures raised by the gateway client, the CRM client and the routers.
"""

from typing import Any


class BridgeError(Exception):
    """Base error for the bridge."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class ConfigurationError(BridgeError):
    """Tenant or instance is missing credentials or configuration."""


class AuthenticationError(BridgeError):
    """CRM credentials are invalid and could not be refreshed."""


class InstanceNotReadyError(BridgeError):
    """The resolved gateway instance is not connected; delivery is impossible."""

    def __init__(self, instance_id: str, state: str | None):
        super().__init__(
            f"Instance {instance_id} is not ready (state={state})",
            code="INSTANCE_NOT_READY",
            details={"instance": instance_id, "state": state},
            retryable=False,
        )
        self.instance_id = instance_id
        self.state = state


class UpstreamError(BridgeError):
    """Non-2xx response, timeout or network failure talking to an upstream API."""

    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    TIMEOUT = "timeout"
    NETWORK = "network"

    service = "upstream"

    def __init__(
        self,
        message: str,
        kind: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message,
            code=str(status_code) if status_code else kind.upper(),
            details=details,
            retryable=kind in (self.RATE_LIMITED, self.SERVER_ERROR, self.TIMEOUT, self.NETWORK),
        )
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(
        cls,
        status_code: int,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "UpstreamError":
        """Classify an HTTP error status."""
        if status_code == 404:
            kind = cls.NOT_FOUND
        elif status_code == 429:
            kind = cls.RATE_LIMITED
        elif status_code >= 500:
            kind = cls.SERVER_ERROR
        else:
            kind = cls.CLIENT_ERROR
        return cls(f"{cls.service} error: {message}", kind=kind, status_code=status_code, details=details)


class GatewayError(UpstreamError):
    """Failure from the Evolution API gateway."""

    service = "gateway"


class CrmError(UpstreamError):
    """Failure from the CRM API."""

    service = "crm"
