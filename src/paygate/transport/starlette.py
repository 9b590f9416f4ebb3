"""Starlette adapter - thin wrapper around StreamableHTTPHandler.

The only transport module with a Starlette dependency. It turns HTTP
requests into JSON-RPC messages for the handler and the handler's results
back into HTTP responses.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import anyio
from pydantic import ValidationError
from sse_starlette import EventSourceResponse, ServerSentEvent
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import BaseRoute, Route

from paygate.exceptions import ProtocolError, StreamConflictError
from paygate.runner import Lifespan, ServerRunner
from paygate.server import GatewayServer
from paygate.transport.httphandler import AcceptedResponse, JSONResult, SSEStream, StreamableHTTPHandler
from paygate.transport.sink import SinkEvent
from paygate.types.json_rpc import (
    INVALID_REQUEST,
    PARSE_ERROR,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCMessageAdapter,
)

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
SSE_PING_SECONDS = 15

_SSE_HEADERS = {"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"}


def _format_sse_event(data: str, event_id: str | None = None) -> str:
    """Format a single SSE event."""
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append("event: message")
    lines.append(f"data: {data}")
    lines.append("")
    lines.append("")
    return "\n".join(lines)


def _dump(message: JSONRPCMessage) -> dict[str, Any]:
    data = message.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(message, JSONRPCErrorResponse):
        data.setdefault("id", None)
    return data


def _event_json(event: SinkEvent) -> str:
    return json.dumps(_dump(event.message), separators=(",", ":"), ensure_ascii=False)


def parse_message(body: bytes) -> JSONRPCMessage:
    """Decode one JSON-RPC message from a request body.

    Raises:
        ProtocolError: for unparseable JSON, batches, or bodies that are not JSON-RPC.
    """
    try:
        raw = json.loads(body)
    except ValueError:
        raise ProtocolError("Parse error", code=PARSE_ERROR) from None
    if isinstance(raw, list):
        raise ProtocolError("Invalid Request: batch requests are not supported", code=INVALID_REQUEST)
    try:
        return JSONRPCMessageAdapter.validate_python(raw)
    except ValidationError:
        raise ProtocolError("Invalid Request: not a JSON-RPC 2.0 message", code=INVALID_REQUEST) from None


def protocol_error_response(request: Request, exc: Exception) -> Response:
    """Render a ProtocolError as 400 with a JSON-RPC error body."""
    assert isinstance(exc, ProtocolError)
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    body = {"jsonrpc": "2.0", "id": None, "error": exc.error.model_dump(exclude_none=True)}
    return JSONResponse(body, status_code=400)


def stream_conflict_response(request: Request, exc: Exception) -> Response:
    body = {"jsonrpc": "2.0", "id": None, "error": {"code": INVALID_REQUEST, "message": f"Conflict: {exc}"}}
    return JSONResponse(body, status_code=409)


async def handle_post(request: Request) -> Response:
    handler: StreamableHTTPHandler = request.app.state.handler
    session_id = request.headers.get(MCP_SESSION_ID_HEADER)

    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        body = {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": INVALID_REQUEST, "message": "Unsupported Media Type: Content-Type must be application/json"},
        }
        return JSONResponse(body, status_code=415)

    message = parse_message(await request.body())
    result = await handler.handle_post(session_id=session_id, message=message)

    match result:
        case AcceptedResponse():
            return Response(status_code=202)

        case JSONResult(body=response_body, session_id=sid, status_code=status_code):
            headers = {MCP_SESSION_ID_HEADER: sid} if sid else None
            return JSONResponse(content=_dump(response_body), status_code=status_code, headers=headers)

        case SSEStream(first_event=first, event_stream=stream, session_id=sid):

            async def generate() -> AsyncIterator[str]:
                async with stream:
                    yield _format_sse_event(_event_json(first), first.event_id)
                    async for event in stream:
                        yield _format_sse_event(_event_json(event), event.event_id)

            return StreamingResponse(
                generate(),
                media_type="text/event-stream",
                headers={MCP_SESSION_ID_HEADER: sid, **_SSE_HEADERS},
            )

    return Response(status_code=500)  # unreachable but satisfies type checker


async def handle_get(request: Request) -> Response:
    handler: StreamableHTTPHandler = request.app.state.handler
    standalone = await handler.handle_get(request.headers.get(MCP_SESSION_ID_HEADER))

    async def events() -> AsyncIterator[ServerSentEvent]:
        try:
            async with standalone.event_stream:
                async for event in standalone.event_stream:
                    yield ServerSentEvent(data=_event_json(event), event="message", id=event.event_id)
        finally:
            standalone.transport.close_stream()

    return EventSourceResponse(
        events(),
        ping=SSE_PING_SECONDS,
        headers={MCP_SESSION_ID_HEADER: standalone.session_id, **_SSE_HEADERS},
    )


async def handle_delete(request: Request) -> Response:
    handler: StreamableHTTPHandler = request.app.state.handler
    await handler.handle_delete(request.headers.get(MCP_SESSION_ID_HEADER))
    return Response(status_code=200)


def rpc_routes(path: str = "/mcp") -> list[BaseRoute]:
    return [
        Route(path, handle_post, methods=["POST"]),
        Route(path, handle_get, methods=["GET"]),
        Route(path, handle_delete, methods=["DELETE"]),
    ]


def create_starlette_app(
    server: GatewayServer,
    *,
    lifespan: Lifespan | None = None,
    path: str = "/mcp",
    routes: Sequence[BaseRoute] = (),
    debug: bool = False,
) -> Starlette:
    """Create a Starlette ASGI app serving *server* on *path*.

    Usage:
        server = GatewayServer(name="paygate", version="0.1.0")
        app = create_starlette_app(server)
        uvicorn.run(app, host="0.0.0.0", port=3000)

    Extra *routes* are mounted next to the RPC endpoint. The lifespan puts
    the StreamableHTTPHandler on ``app.state.handler`` and closes every open
    session on shutdown.
    """

    @asynccontextmanager
    async def app_lifespan(app: Starlette) -> AsyncIterator[None]:
        runner = ServerRunner(server, lifespan=lifespan)
        async with runner.run() as running:
            async with anyio.create_task_group() as tg:
                handler = StreamableHTTPHandler(running, tg)
                app.state.handler = handler
                try:
                    yield
                finally:
                    await handler.close_all()
                    tg.cancel_scope.cancel()

    return Starlette(
        debug=debug,
        lifespan=app_lifespan,
        routes=[*rpc_routes(path), *routes],
        exception_handlers={
            ProtocolError: protocol_error_response,
            StreamConflictError: stream_conflict_response,
        },
    )
