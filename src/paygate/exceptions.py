"""Exception hierarchy for the gateway."""

from typing import Any

from paygate.types.json_rpc import INVALID_REQUEST, ErrorData


class GatewayError(Exception):
    """Base error for the gateway."""


class ProtocolError(GatewayError):
    """A malformed or out-of-sequence exchange on the RPC endpoint.

    Rendered as an HTTP 400 carrying a JSON-RPC error body. Never closes an
    otherwise valid session.
    """

    error: ErrorData

    def __init__(self, message: str, code: int = INVALID_REQUEST, data: Any | None = None):
        super().__init__(message)
        self.error = ErrorData(code=code, message=message, data=data)


class SessionNotFoundError(ProtocolError):
    """The request named a session that does not exist or was closed."""

    def __init__(self, session_id: str | None = None):
        if session_id is None:
            message = "Bad Request: No valid session ID provided"
        else:
            message = "Bad Request: Unknown session"
        super().__init__(message, code=INVALID_REQUEST)
        self.session_id = session_id


class DuplicateSessionError(GatewayError):
    """A session id was registered twice."""


class InvalidStateTransition(GatewayError):
    """A transport was asked to move between states the lifecycle forbids."""


class TransportClosedError(GatewayError):
    """The transport is closed; no further operations are accepted."""


class StreamConflictError(GatewayError):
    """The session already has a server-to-client stream open."""


class ToolError(GatewayError):
    """Error raised by a tool handler; surfaces as an error-shaped tool result."""


class ProviderAPIError(ToolError):
    """A payment or compute provider answered with a non-success status."""

    def __init__(self, provider: str, status_code: int, reason: str, body: str = ""):
        message = f"{provider} API error: {status_code} {reason}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ConfigurationError(ToolError):
    """A required setting (API key, secret) is missing."""


class WebhookError(GatewayError):
    """Base error for inbound webhook deliveries."""

    status_code: int = 500


class InvalidSignatureError(WebhookError):
    """The delivery failed authentication. Indicates tampering or misconfiguration."""

    status_code = 401


class InvalidPayloadError(WebhookError):
    """The delivery was authentic but structurally unusable."""

    status_code = 400


__all__ = [
    "ConfigurationError",
    "DuplicateSessionError",
    "GatewayError",
    "InvalidPayloadError",
    "InvalidSignatureError",
    "InvalidStateTransition",
    "ProtocolError",
    "ProviderAPIError",
    "SessionNotFoundError",
    "StreamConflictError",
    "ToolError",
    "TransportClosedError",
    "WebhookError",
]
