"""RequestContext and the ResponseSink protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from paygate.session import SessionInfo
from paygate.types.json_rpc import (
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCResponse,
    RequestId,
)


@runtime_checkable
class ResponseSink(Protocol):
    """Transport-specific sink for outgoing messages during request processing.

    One per incoming request. The HTTP transport writes into a memory channel
    and decides between SSE and JSON from what the handler emitted.
    """

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        """Send a notification or server-to-client request during processing."""
        ...

    async def send_result(self, response: JSONRPCResponse) -> None:
        """Send the final result. After this, the sink is done."""
        ...

    async def close(self) -> None:
        """Ensure the sink is closed (e.g., on handler error)."""
        ...


@dataclass
class RequestContext:
    """What handlers receive.

    Carries the lifespan state, the session the request arrived on and the
    sink its output goes to. Handlers never see the transport itself.
    """

    server_state: Any
    session: SessionInfo | None
    request_id: RequestId
    _sink: ResponseSink
    progress_token: str | int | None = None

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification to the client while the request is in flight.

        Over HTTP this turns the response into an SSE stream.
        """
        notification = JSONRPCNotification(method=method, params=params)
        await self._sink.send_intermediate(notification)

    async def report_progress(self, progress: float, total: float | None = None, message: str | None = None) -> None:
        """Emit ``notifications/progress`` if the client asked for progress on this request."""
        if self.progress_token is None:
            return
        params: dict[str, Any] = {"progressToken": self.progress_token, "progress": progress}
        if total is not None:
            params["total"] = total
        if message is not None:
            params["message"] = message
        await self.send_notification("notifications/progress", params)
