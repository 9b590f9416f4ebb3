"""StreamableHTTPHandler - framework-agnostic HTTP transport logic.

Creates a SessionTransport per ``initialize``, looks sessions up for every
other message, and decides between SSE and JSON responses. No Starlette
dependency: tests can drive it with plain messages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream

from paygate.exceptions import SessionNotFoundError
from paygate.runner import RunningServer
from paygate.transport.session_table import SessionTable
from paygate.transport.sink import SinkEvent
from paygate.transport.transport import SessionTransport
from paygate.types.json_rpc import (
    INTERNAL_ERROR,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    error_response,
)

logger = logging.getLogger(__name__)


# --- Post result types ---


@dataclass
class AcceptedResponse:
    """Notification or client response accepted. Ack with 202."""


@dataclass
class JSONResult:
    """Handler completed without intermediate messages. Return as JSON."""

    body: JSONRPCResponse
    session_id: str | None
    status_code: int = 200


@dataclass
class SSEStream:
    """Handler is streaming. First event already available."""

    first_event: SinkEvent
    event_stream: MemoryObjectReceiveStream[SinkEvent]
    session_id: str


PostResult = AcceptedResponse | JSONResult | SSEStream


@dataclass
class StandaloneStream:
    """The session's server-to-client stream opened by GET."""

    transport: SessionTransport
    event_stream: MemoryObjectReceiveStream[SinkEvent]

    @property
    def session_id(self) -> str:
        return self.transport.session_id


def status_for(response: JSONRPCResponse) -> int:
    """HTTP status for a final JSON-RPC response."""
    if isinstance(response, JSONRPCErrorResponse):
        if response.is_protocol_error:
            return 400
        if response.error.code == INTERNAL_ERROR:
            return 500
    return 200


# --- Handler ---


class StreamableHTTPHandler:
    """Session-multiplexing StreamableHTTP logic.

    All sessions share this handler and its task group; the SessionTable is
    the only state they share. Protocol violations raise ProtocolError (or
    SessionNotFoundError) for the framework adapter to render as 400.
    """

    def __init__(self, running: RunningServer, tg: TaskGroup, *, table: SessionTable | None = None) -> None:
        self._running = running
        self._tg = tg
        self.table = table if table is not None else SessionTable()

    def _lookup(self, session_id: str | None) -> SessionTransport:
        if not session_id:
            raise SessionNotFoundError(None)
        transport = self.table.lookup(session_id)
        if transport is None or transport.closed:
            raise SessionNotFoundError(session_id)
        return transport

    async def handle_post(self, session_id: str | None, message: JSONRPCMessage) -> PostResult:
        """Handle one POSTed message. Returns a PostResult telling the framework what to respond with."""
        if isinstance(message, JSONRPCRequest) and message.method == "initialize" and not session_id:
            return await self._initialize(message)

        transport = self._lookup(session_id)

        if isinstance(message, JSONRPCNotification):
            await transport.handle_notification(message)
            return AcceptedResponse()

        if not isinstance(message, JSONRPCRequest):
            transport.handle_response(message)
            return AcceptedResponse()

        receive = await transport.handle_request(message)

        # Read first event to decide response format
        try:
            first = await receive.receive()
        except anyio.EndOfStream:
            receive.close()
            if transport.closed:
                raise SessionNotFoundError(transport.session_id) from None
            body = error_response(INTERNAL_ERROR, "Internal error", message.id)
            return JSONResult(body=body, session_id=transport.session_id, status_code=500)

        if first.is_final:
            receive.close()
            response: JSONRPCResponse = first.message  # type: ignore[assignment]
            return JSONResult(body=response, session_id=transport.session_id, status_code=status_for(response))

        # Handler sent intermediate messages → SSE stream
        return SSEStream(first_event=first, event_stream=receive, session_id=transport.session_id)

    async def _initialize(self, request: JSONRPCRequest) -> JSONResult:
        session_id = self.table.new_session_id()
        logger.debug("Initializing session %s", session_id)
        transport = SessionTransport(session_id, self._running, self.table, self._tg)
        response = await transport.initialize(request)
        if transport.closed:
            return JSONResult(body=response, session_id=None, status_code=400)
        return JSONResult(body=response, session_id=session_id)

    async def handle_get(self, session_id: str | None) -> StandaloneStream:
        """Open the session's server-to-client stream.

        Raises:
            SessionNotFoundError: if the session id is missing or unknown.
            StreamConflictError: if the session already has a stream open.
        """
        transport = self._lookup(session_id)
        return StandaloneStream(transport=transport, event_stream=transport.open_stream())

    async def handle_delete(self, session_id: str | None) -> None:
        """Terminate a session.

        Raises:
            SessionNotFoundError: if the session id is missing or unknown.
        """
        transport = self._lookup(session_id)
        await transport.close()

    async def broadcast(self, method: str, params: dict[str, Any] | None = None) -> int:
        """Send a notification to every session with an open stream. Returns how many received it."""
        delivered = 0
        for transport in self.table.snapshot():
            if await transport.send_notification(method, params):
                delivered += 1
        return delivered

    async def close_all(self) -> None:
        for transport in self.table.snapshot():
            await transport.close()
