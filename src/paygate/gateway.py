"""The gateway application: RPC endpoint, webhooks, health and info routes."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import anyio
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from paygate.resources import ResourceCatalog
from paygate.server import GatewayServer
from paygate.settings import Settings
from paygate.tools import ToolRegistry, register_builtin_tools, register_payment_tools
from paygate.transport.httphandler import StreamableHTTPHandler
from paygate.transport.starlette import create_starlette_app
from paygate.utilities.http import HttpClientFactory, create_http_client
from paygate.webhooks.router import ProcessedWebhook, WebhookRouter

logger = logging.getLogger(__name__)

DESCRIPTION = "Crypto payment tools over MCP streamable HTTP, with provider webhook endpoints"
INSTRUCTIONS = (
    "Tools cover NowPayments invoices, Coinbase Commerce charges and Comput3 text completions. "
    "Payment events received by webhook are pushed as notifications/message on the session's GET stream."
)
WEBHOOK_PREFIX = "/webhook"
BROADCAST_TIMEOUT_SECONDS = 5.0


def _handler(app: Starlette) -> StreamableHTTPHandler | None:
    return getattr(app.state, "handler", None)


def create_app(
    settings: Settings | None = None,
    *,
    http_client_factory: HttpClientFactory = create_http_client,
    debug: bool = False,
) -> Starlette:
    """Build the gateway ASGI app.

    Usage:
        app = create_app(Settings())
        uvicorn.run(app, host="0.0.0.0", port=3000)
    """
    settings = settings or Settings()

    server = GatewayServer(name=settings.server_name, version=settings.server_version, instructions=INSTRUCTIONS)
    registry = ToolRegistry(timeout=settings.tool_timeout_seconds)
    register_builtin_tools(registry)
    register_payment_tools(registry, settings, http_client_factory=http_client_factory)
    registry.install(server)
    catalog = ResourceCatalog(server)
    catalog.install()
    webhooks = WebhookRouter(settings)

    async def health(request: Request) -> JSONResponse:
        handler = _handler(request.app)
        return JSONResponse(
            {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": round(catalog.uptime, 3),
                "sessions": len(handler.table) if handler is not None else 0,
            }
        )

    async def info(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "name": server.name,
                "version": server.version,
                "description": DESCRIPTION,
                "endpoints": {
                    "rpc": settings.rpc_path,
                    "health": "/health",
                    "webhooks": {provider.value: path for provider, path in webhooks.paths(WEBHOOK_PREFIX).items()},
                },
                "tools": registry.names(),
                "resources": catalog.uris,
            }
        )

    app = create_starlette_app(
        server,
        path=settings.rpc_path,
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/", info, methods=["GET"]),
            *webhooks.routes(WEBHOOK_PREFIX),
        ],
        debug=debug,
    )

    @webhooks.add_listener
    async def broadcast_payment_event(processed: ProcessedWebhook) -> None:
        handler = _handler(app)
        if handler is None:
            return
        params = {
            "level": "info",
            "logger": "paygate.webhooks",
            "data": {
                "provider": processed.provider.value,
                "event_id": processed.event.event_id,
                "lifecycle": processed.lifecycle.value,
                "verified": processed.delivery.verified,
            },
        }
        with anyio.move_on_after(BROADCAST_TIMEOUT_SECONDS) as scope:
            delivered = await handler.broadcast("notifications/message", params)
        if scope.cancelled_caught:
            logger.warning("Broadcast of %s %s timed out", processed.provider.value, processed.event.event_id)
            return
        logger.debug("Broadcast %s %s to %d session(s)", processed.provider.value, processed.event.event_id, delivered)

    app.state.settings = settings
    app.state.server = server
    app.state.tools = registry
    app.state.resources = catalog
    app.state.webhooks = webhooks
    return app
