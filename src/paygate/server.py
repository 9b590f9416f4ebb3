"""GatewayServer: method registry and dispatch.

No I/O and no session bookkeeping. Transports hand it one request at a time
and get a JSON-RPC response back.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from paygate.context import RequestContext
from paygate.exceptions import ProtocolError
from paygate.types.base import ServerCapabilities
from paygate.types.json_rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    JSONRPCErrorResponse,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    error_response,
)

logger = logging.getLogger(__name__)

RequestHandler = Callable[[RequestContext, JSONRPCRequest], Awaitable[Any]]
NotificationHandler = Callable[[RequestContext, JSONRPCNotification], Awaitable[None]]


def _as_result(value: Any) -> dict[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, dict):
        return value
    return {}


class GatewayServer:
    """The methods the gateway answers, keyed by JSON-RPC method name.

    Usage:
        server = GatewayServer(name="paygate", version="0.1.0")

        @server.request_handler("tools/list")
        async def list_tools(ctx: RequestContext, request: JSONRPCRequest):
            return ListToolsResult(tools=[...])

    ``ping`` is answered out of the box. Tools and resources are installed by
    ``ToolRegistry.install`` and ``ResourceCatalog.install``.
    """

    def __init__(self, *, name: str, version: str, instructions: str | None = None) -> None:
        self.name = name
        self.version = version
        self.instructions = instructions
        self._requests: dict[str, RequestHandler] = {"ping": self._ping}
        self._notifications: dict[str, NotificationHandler] = {}

    @staticmethod
    async def _ping(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    def request_handler(self, method: str) -> Callable[[RequestHandler], RequestHandler]:
        def register(fn: RequestHandler) -> RequestHandler:
            self._requests[method] = fn
            return fn

        return register

    def notification_handler(self, method: str) -> Callable[[NotificationHandler], NotificationHandler]:
        def register(fn: NotificationHandler) -> NotificationHandler:
            self._notifications[method] = fn
            return fn

        return register

    @property
    def methods(self) -> list[str]:
        return sorted(self._requests)

    async def dispatch_request(self, ctx: RequestContext, request: JSONRPCRequest) -> JSONRPCResponse:
        """Run the handler for *request* and wrap its outcome in a response.

        Unknown methods and malformed params come back as protocol errors.
        Anything else a handler raises becomes an internal error, which the
        client sees without the exception text.
        """
        method = request.method
        handler = self._requests.get(method)
        if handler is None:
            return error_response(METHOD_NOT_FOUND, f"Method not found: {method}", request.id)
        try:
            value = await handler(ctx, request)
        except ValidationError as e:
            logger.info("Invalid params for %s: %s", method, e)
            return error_response(INVALID_PARAMS, f"Invalid params for {method}", request.id)
        except ProtocolError as e:
            return JSONRPCErrorResponse(id=request.id, error=e.error)
        except Exception:
            logger.exception("%s failed", method)
            return error_response(INTERNAL_ERROR, "Internal error", request.id)
        return JSONRPCResultResponse(id=request.id, result=_as_result(value))

    async def dispatch_notification(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        handler = self._notifications.get(notification.method)
        if handler is None:
            logger.debug("Ignoring notification %s", notification.method)
            return
        try:
            await handler(ctx, notification)
        except Exception:
            logger.exception("Notification %s failed", notification.method)

    def get_capabilities(self) -> ServerCapabilities:
        """Announce tools and resources only when their methods are installed."""
        installed = set(self._requests)
        capabilities = ServerCapabilities()
        if installed & {"tools/list", "tools/call"}:
            capabilities.tools = {"listChanged": False}
        if installed & {"resources/list", "resources/read"}:
            capabilities.resources = {"subscribe": False, "listChanged": False}
        return capabilities
