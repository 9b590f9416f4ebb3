"""SessionTransport: the protocol engine for one session.

A transport is created for each ``initialize`` request that arrives without
a session id. Once the handshake succeeds it registers itself in the
SessionTable and serves every later message carrying its id until it is
closed. Lifecycle::

    UNINITIALIZED -> INITIALIZING -> READY -> CLOSED

Every state may move to CLOSED; CLOSED is terminal.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from paygate.exceptions import (
    InvalidStateTransition,
    ProtocolError,
    SessionNotFoundError,
    StreamConflictError,
    TransportClosedError,
)
from paygate.runner import RunningServer, initialize_response
from paygate.session import SessionInfo
from paygate.transport.session_table import SessionTable
from paygate.transport.sink import ChannelSink, NullSink, SinkEvent
from paygate.types.json_rpc import (
    INTERNAL_ERROR,
    JSONRPCErrorResponse,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    error_response,
)

logger = logging.getLogger(__name__)

CANCELLED_NOTIFICATION = "notifications/cancelled"


class TransportState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


_VALID_TRANSITIONS: dict[TransportState, frozenset[TransportState]] = {
    TransportState.UNINITIALIZED: frozenset({TransportState.INITIALIZING, TransportState.CLOSED}),
    TransportState.INITIALIZING: frozenset({TransportState.READY, TransportState.CLOSED}),
    TransportState.READY: frozenset({TransportState.READY, TransportState.CLOSED}),
    TransportState.CLOSED: frozenset(),
}


@dataclass
class PendingRequest:
    """A client request being handled: where its output goes and how to cancel it."""

    sink: ChannelSink
    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)


class SessionTransport:
    """Per-session state machine with request/response correlation.

    Each client request runs in its own task on the shared task group and
    writes to its own channel, keyed by request id, so concurrent requests on
    one session never block each other and never receive each other's
    results. Because a request can suspend at any point, every entry point
    re-checks the state before acting on it.
    """

    def __init__(
        self,
        session_id: str,
        running: RunningServer,
        table: SessionTable,
        task_group: TaskGroup,
        *,
        buffer_size: int = 16,
    ) -> None:
        self.session_id = session_id
        self.state = TransportState.UNINITIALIZED
        self.session_info: SessionInfo | None = None
        self.pending_requests: dict[RequestId, PendingRequest] = {}
        self.outgoing_requests: dict[RequestId, MemoryObjectSendStream[JSONRPCResponse]] = {}
        self._running = running
        self._table = table
        self._task_group = task_group
        self._buffer_size = buffer_size
        self._registered = False
        self._stream: MemoryObjectSendStream[SinkEvent] | None = None
        self._request_ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    def __repr__(self) -> str:
        return f"SessionTransport(session_id={self.session_id!r}, state={self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state is TransportState.CLOSED

    @property
    def has_stream(self) -> bool:
        return self._stream is not None

    def _transition(self, new_state: TransportState) -> None:
        if new_state not in _VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Session {self.session_id}: cannot move from {self.state.value} to {new_state.value}"
            )
        logger.debug("Session %s: %s -> %s", self.session_id, self.state.value, new_state.value)
        self.state = new_state

    def _ensure_ready(self) -> None:
        if self.state is TransportState.CLOSED:
            raise SessionNotFoundError(self.session_id)
        if self.state is not TransportState.READY:
            raise ProtocolError("Bad Request: Server not initialized")

    # -- handshake ---------------------------------------------------------

    async def initialize(self, request: JSONRPCRequest) -> JSONRPCResponse:
        """Run the handshake and, on success, register the session.

        A failed handshake closes the transport without it ever being
        registered, and comes back as an error response.
        """
        self._transition(TransportState.INITIALIZING)
        try:
            result, session_info = await self._running.initialize(request, session_id=self.session_id)
        except ProtocolError as e:
            logger.info("Initialize rejected: %s", e)
            await self.close()
            return JSONRPCErrorResponse(id=request.id, error=e.error)
        except BaseException:
            await self.close()
            raise

        # The handshake may have suspended; only a still-initializing transport may register.
        if self.state is not TransportState.INITIALIZING:
            raise TransportClosedError(f"Session {self.session_id} closed during initialization")
        self.session_info = session_info
        self._table.register(self.session_id, self)
        self._registered = True
        self._transition(TransportState.READY)
        return initialize_response(request, result)

    # -- client -> server --------------------------------------------------

    async def handle_request(self, request: JSONRPCRequest) -> MemoryObjectReceiveStream[SinkEvent]:
        """Start handling *request* and return the channel its events arrive on.

        Raises:
            SessionNotFoundError: if the transport is closed.
            ProtocolError: if a request with the same id is still in flight.
        """
        self._ensure_ready()
        if request.id in self.pending_requests:
            raise ProtocolError(f"Bad Request: Request id {request.id!r} is already in flight")

        send, receive = anyio.create_memory_object_stream[SinkEvent](self._buffer_size)
        pending = PendingRequest(sink=ChannelSink(send))
        self.pending_requests[request.id] = pending
        self._task_group.start_soon(self._run_request, request, pending)
        return receive

    async def _run_request(self, request: JSONRPCRequest, pending: PendingRequest) -> None:
        try:
            with pending.scope:
                await self._running.handle_message(pending.sink, request, session=self.session_info)
        except Exception:
            logger.exception("Unhandled error for request %s on session %s", request.id, self.session_id)
            await pending.sink.send_result(error_response(INTERNAL_ERROR, "Internal error", request.id))
        finally:
            if self.pending_requests.get(request.id) is pending:
                del self.pending_requests[request.id]
            await pending.sink.close()

    async def handle_notification(self, notification: JSONRPCNotification) -> None:
        self._ensure_ready()
        if notification.method == CANCELLED_NOTIFICATION:
            self._cancel_request((notification.params or {}).get("requestId"))
            return
        self._task_group.start_soon(self._run_notification, notification)

    async def _run_notification(self, notification: JSONRPCNotification) -> None:
        try:
            await self._running.handle_message(NullSink(), notification, session=self.session_info)
        except Exception:
            logger.exception("Notification handler error on session %s", self.session_id)

    def _cancel_request(self, request_id: Any) -> None:
        pending = self.pending_requests.get(request_id)
        if pending is None:
            logger.debug("Cancellation for unknown request %r on session %s", request_id, self.session_id)
            return
        logger.info("Cancelling request %r on session %s", request_id, self.session_id)
        pending.scope.cancel()

    def handle_response(self, response: JSONRPCResponse) -> None:
        """Deliver a client's answer to a server-to-client request."""
        self._ensure_ready()
        waiter = self.outgoing_requests.pop(response.id, None) if response.id is not None else None
        if waiter is None:
            logger.warning("Session %s: response for unknown request id %r", self.session_id, response.id)
            return
        try:
            waiter.send_nowait(response)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.WouldBlock):
            logger.debug("Session %s: waiter for %r is gone", self.session_id, response.id)
        finally:
            waiter.close()

    # -- server -> client --------------------------------------------------

    def open_stream(self) -> MemoryObjectReceiveStream[SinkEvent]:
        """Open the session's standalone server-to-client stream.

        Raises:
            StreamConflictError: if a stream is already open.
        """
        self._ensure_ready()
        if self._stream is not None:
            raise StreamConflictError(f"Session {self.session_id} already has an open stream")
        send, receive = anyio.create_memory_object_stream[SinkEvent](self._buffer_size)
        self._stream = send
        logger.debug("Session %s: stream opened", self.session_id)
        return receive

    def close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
            logger.debug("Session %s: stream closed", self.session_id)

    async def _send_on_stream(self, message: JSONRPCRequest | JSONRPCNotification) -> bool:
        stream = self._stream
        if stream is None or self.closed:
            return False
        # Never waits on the reader; a full buffer drops the message for this session.
        try:
            stream.send_nowait(SinkEvent(message=message, event_id=str(next(self._event_ids))))
        except anyio.WouldBlock:
            logger.warning("Session %s: stream is full, dropped %s", self.session_id, message.method)
            return False
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            if self._stream is stream:
                self._stream = None
            return False
        return True

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> bool:
        """Push a notification on the standalone stream. Returns False when no stream is open."""
        sent = await self._send_on_stream(JSONRPCNotification(method=method, params=params))
        if not sent:
            logger.debug("Session %s: no stream, dropped %s", self.session_id, method)
        return sent

    async def send_request(
        self, method: str, params: dict[str, Any] | None = None, *, timeout: float = 30.0
    ) -> JSONRPCResponse:
        """Send a request to the client and wait for the response it POSTs back.

        Raises:
            TransportClosedError: if no stream is open or the session closes first.
            TimeoutError: if no response arrives within *timeout* seconds.
        """
        self._ensure_ready()
        request_id = f"srv-{next(self._request_ids)}"
        send, receive = anyio.create_memory_object_stream[JSONRPCResponse](1)
        self.outgoing_requests[request_id] = send
        try:
            if not await self._send_on_stream(JSONRPCRequest(id=request_id, method=method, params=params)):
                raise TransportClosedError(f"Session {self.session_id} has no open stream")
            with anyio.fail_after(timeout):
                async with receive:
                    return await receive.receive()
        except anyio.EndOfStream:
            raise TransportClosedError(f"Session {self.session_id} closed before {method} was answered") from None
        finally:
            self.outgoing_requests.pop(request_id, None)
            send.close()

    # -- teardown ----------------------------------------------------------

    async def close(self) -> None:
        """Close the transport. Idempotent; the table entry is removed exactly once."""
        if self.state is TransportState.CLOSED:
            return
        self._transition(TransportState.CLOSED)
        if self._registered:
            self._registered = False
            self._table.remove(self.session_id)

        # In-flight calls keep running under their tool timeout; closing the
        # sink drops whatever they produce from here on.
        pending, self.pending_requests = list(self.pending_requests.values()), {}
        for request in pending:
            await request.sink.close()

        waiters, self.outgoing_requests = list(self.outgoing_requests.values()), {}
        for waiter in waiters:
            waiter.close()

        self.close_stream()
        logger.info("Session %s closed", self.session_id)
