"""JSON-RPC 2.0 envelopes exchanged over the gateway's RPC endpoint.

Every envelope keeps unknown members, so a client on a newer protocol
revision is never rejected for sending fields the gateway does not know yet.
"""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Codes that blame the caller. Everything else is the gateway's fault.
CALLER_ERROR_CODES: Final[frozenset[int]] = frozenset({PARSE_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND, INVALID_PARAMS})

# Booleans are ints to pydantic's lax mode, and `true` is not a valid id.
RequestId = Annotated[int, Field(strict=True)] | str


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = "2.0"


class JSONRPCRequest(_Envelope):
    """A call the peer must answer, correlated by ``id``."""

    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(_Envelope):
    """A one-way message. Never answered."""

    method: str
    params: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _reject_id(cls, data: Any) -> Any:
        # A request whose id failed validation must not pass as a notification.
        if isinstance(data, dict) and "id" in data:
            raise ValueError("notifications do not carry an id")
        return data


class ErrorData(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(_Envelope):
    id: RequestId
    result: dict[str, Any]


class JSONRPCErrorResponse(_Envelope):
    """An error answer. ``id`` is null when the request could not be read at all."""

    id: RequestId | None = None
    error: ErrorData

    @property
    def is_protocol_error(self) -> bool:
        return self.error.code in CALLER_ERROR_CODES


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse
JSONRPCMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse

JSONRPCMessageAdapter: TypeAdapter[JSONRPCMessage] = TypeAdapter(JSONRPCMessage)


def error_response(code: int, message: str, request_id: RequestId | None = None) -> JSONRPCErrorResponse:
    return JSONRPCErrorResponse(id=request_id, error=ErrorData(code=code, message=message))
