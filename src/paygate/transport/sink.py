"""Response sinks: where a request handler writes its intermediate messages and final result."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from paygate.types.json_rpc import JSONRPCMessage, JSONRPCResponse

logger = logging.getLogger(__name__)


@dataclass
class SinkEvent:
    """An event produced by a ResponseSink for the HTTP layer to consume."""

    message: JSONRPCMessage
    event_id: str | None = None
    is_final: bool = False


class ChannelSink:
    """ResponseSink that writes events to a memory channel.

    The HTTP handler reads from the other end of the channel to decide between
    a JSON and an SSE response. If that reader has gone away (client
    disconnect, session closed) events are dropped: a result that arrives
    after its session closed is discarded, not raised.
    """

    def __init__(self, send_stream: MemoryObjectSendStream[SinkEvent]) -> None:
        self._send = send_stream
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        """Send an intermediate message (notification or server-to-client request)."""
        if self._closed:
            return
        try:
            await self._send.send(SinkEvent(message=message))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Reader gone; dropping intermediate message")
            await self.close()

    async def send_result(self, response: JSONRPCResponse) -> None:
        """Send the final result and close the channel."""
        if self._closed:
            logger.debug("Sink closed; discarding result for request %s", response.id)
            return
        try:
            await self._send.send(SinkEvent(message=response, is_final=True))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Reader gone; discarding result for request %s", response.id)
        await self.close()

    async def close(self) -> None:
        """Close the channel without sending a result (e.g., on handler error)."""
        if self._closed:
            return
        self._closed = True
        with anyio.CancelScope(shield=True):
            await self._send.aclose()


class NullSink:
    """A sink that does nothing. Used for notifications, which never produce responses."""

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        pass

    async def send_result(self, response: JSONRPCResponse) -> None:
        pass

    async def close(self) -> None:
        pass
