"""ServerRunner and RunningServer.

The runner bridges the GatewayServer (pure dispatch) with transports. It
enters the lifespan once, answers the initialize handshake and routes every
other message to the server.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from pydantic import ValidationError

from paygate.context import RequestContext, ResponseSink
from paygate.exceptions import ProtocolError
from paygate.server import GatewayServer
from paygate.session import SessionInfo
from paygate.types.base import LATEST_PROTOCOL_VERSION, SUPPORTED_PROTOCOL_VERSIONS, Implementation, ServerCapabilities
from paygate.types.initialize import InitializeRequestParams, InitializeResult
from paygate.types.json_rpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResultResponse,
)

logger = logging.getLogger(__name__)

Lifespan = Callable[[GatewayServer], AbstractAsyncContextManager[Any]]


@asynccontextmanager
async def _default_lifespan(server: GatewayServer) -> AsyncIterator[dict[str, Any]]:
    yield {}


def negotiate_protocol_version(requested: str) -> str:
    """Echo the client's version when supported, otherwise offer the latest."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


class ServerRunner:
    """Manages lifecycle and produces a RunningServer.

    Usage:
        runner = ServerRunner(server, lifespan=my_lifespan)
        async with runner.run() as running:
            ...
    """

    def __init__(self, server: GatewayServer, *, lifespan: Lifespan | None = None) -> None:
        self.server = server
        self._lifespan = lifespan or _default_lifespan

    @asynccontextmanager
    async def run(self) -> AsyncIterator[RunningServer]:
        """Enter server lifespan once, yield a running server."""
        async with self._lifespan(self.server) as server_state:
            yield RunningServer(self.server, server_state)


class RunningServer:
    """A server with active lifespan, ready to handle requests.

    The GatewayServer never sees ``initialize`` as a request; the handshake
    is protocol machinery and is answered here.
    """

    def __init__(self, server: GatewayServer, server_state: Any) -> None:
        self._server = server
        self._server_state = server_state

    async def initialize(self, request: JSONRPCRequest, *, session_id: str) -> tuple[InitializeResult, SessionInfo]:
        """Compute the handshake result for a new session.

        Raises:
            ProtocolError: if the params are not a valid initialize request.
        """
        try:
            params = InitializeRequestParams.model_validate(request.params or {})
        except ValidationError as e:
            raise ProtocolError("Invalid initialize params", code=INVALID_PARAMS, data=str(e)) from e

        protocol_version = negotiate_protocol_version(params.protocol_version)
        result = InitializeResult(
            protocol_version=protocol_version,
            capabilities=self._server.get_capabilities(),
            server_info=Implementation(name=self._server.name, version=self._server.version),
            instructions=self._server.instructions,
        )
        session_info = SessionInfo(
            session_id=session_id,
            client_info=params.client_info,
            client_capabilities=params.capabilities,
            protocol_version=protocol_version,
        )
        logger.info(
            "Session %s initialized by %s %s (protocol %s)",
            session_id,
            params.client_info.name,
            params.client_info.version,
            protocol_version,
        )
        return result, session_info

    async def handle_message(
        self,
        sink: ResponseSink,
        message: JSONRPCMessage,
        *,
        session: SessionInfo | None = None,
    ) -> None:
        """Dispatch a single non-handshake message on an established session.

        Requests are answered through *sink*; notifications produce nothing.
        Responses from the client are routed by the transport, never here.
        """
        if isinstance(message, JSONRPCRequest):
            if message.method == "initialize":
                await sink.send_result(
                    JSONRPCErrorResponse(
                        id=message.id,
                        error=ErrorData(code=INVALID_REQUEST, message="Session already initialized"),
                    )
                )
                return

            ctx = RequestContext(
                server_state=self._server_state,
                session=session,
                request_id=message.id,
                _sink=sink,
                progress_token=_progress_token(message),
            )
            response = await self._server.dispatch_request(ctx, message)
            await sink.send_result(response)
            return

        if isinstance(message, JSONRPCNotification):
            if message.method == "notifications/initialized":
                return
            ctx = RequestContext(
                server_state=self._server_state,
                session=session,
                request_id="notification",
                _sink=sink,
            )
            await self._server.dispatch_notification(ctx, message)

    @property
    def capabilities(self) -> ServerCapabilities:
        return self._server.get_capabilities()

    @property
    def server_state(self) -> Any:
        return self._server_state


def _progress_token(request: JSONRPCRequest) -> str | int | None:
    meta = (request.params or {}).get("_meta")
    if isinstance(meta, dict):
        token = meta.get("progressToken")
        if isinstance(token, (str, int)) and not isinstance(token, bool):
            return token
    return None


def initialize_response(request: JSONRPCRequest, result: InitializeResult) -> JSONRPCResultResponse:
    return JSONRPCResultResponse(id=request.id, result=result.dump())
