"""Read-only resources: the server configuration and per-component status."""

from __future__ import annotations

import json
import re
import time
from datetime import datetime, timezone
from typing import Any

from paygate.context import RequestContext
from paygate.exceptions import ProtocolError
from paygate.server import GatewayServer
from paygate.types.json_rpc import INVALID_PARAMS, JSONRPCRequest
from paygate.types.resources import (
    ListResourcesResult,
    ListResourceTemplatesResult,
    ReadResourceRequestParams,
    ReadResourceResult,
    Resource,
    ResourceTemplate,
    TextResourceContents,
)

CONFIG_URI = "config://server"
STATUS_TEMPLATE = "status://{component}"
COMPONENT_STATUS = {
    "server": "healthy",
    "database": "connected",
    "api": "operational",
    "cache": "active",
}

_STATUS_URI = re.compile(r"^status://(?P<component>[^/]+)$")


class ResourceCatalog:
    """Resources served by the gateway.

    ``config://server`` describes this process; ``status://{component}``
    reports on one of the known components and answers ``unknown`` for
    anything else.
    """

    def __init__(self, server: GatewayServer, *, started_at: float | None = None) -> None:
        self._server = server
        self.started_at = time.monotonic() if started_at is None else started_at

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def list_resources(self) -> list[Resource]:
        return [
            Resource(
                uri=CONFIG_URI,
                name="config",
                title="Server Configuration",
                description="Server configuration information",
                mime_type="application/json",
            )
        ]

    def list_templates(self) -> list[ResourceTemplate]:
        return [
            ResourceTemplate(
                uri_template=STATUS_TEMPLATE,
                name="status",
                title="Component Status",
                description=f"Status of a component ({', '.join(COMPONENT_STATUS)})",
                mime_type="application/json",
            )
        ]

    @property
    def uris(self) -> list[str]:
        return [CONFIG_URI, STATUS_TEMPLATE]

    def read(self, uri: str) -> TextResourceContents:
        """Render the resource at *uri*.

        Raises:
            ProtocolError: if *uri* names no resource.
        """
        if uri == CONFIG_URI:
            return _json_contents(uri, self._config())
        if match := _STATUS_URI.match(uri):
            return _json_contents(uri, self._status(match["component"]))
        raise ProtocolError(f"Resource not found: {uri}", code=INVALID_PARAMS)

    def _config(self) -> dict[str, Any]:
        return {
            "name": self._server.name,
            "version": self._server.version,
            "capabilities": self._server.get_capabilities().dump(),
            "methods": self._server.methods,
            "uptime": round(self.uptime, 3),
        }

    def _status(self, component: str) -> dict[str, Any]:
        return {
            "component": component,
            "status": COMPONENT_STATUS.get(component, "unknown"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def install(self) -> None:
        """Answer the resources/* methods on the server this catalog describes."""
        server = self._server

        @server.request_handler("resources/list")
        async def list_resources(ctx: RequestContext, request: JSONRPCRequest) -> ListResourcesResult:
            return ListResourcesResult(resources=self.list_resources())

        @server.request_handler("resources/templates/list")
        async def list_templates(ctx: RequestContext, request: JSONRPCRequest) -> ListResourceTemplatesResult:
            return ListResourceTemplatesResult(resource_templates=self.list_templates())

        @server.request_handler("resources/read")
        async def read_resource(ctx: RequestContext, request: JSONRPCRequest) -> ReadResourceResult:
            params = ReadResourceRequestParams.model_validate(request.params or {})
            return ReadResourceResult(contents=[self.read(params.uri)])


def _json_contents(uri: str, payload: dict[str, Any]) -> TextResourceContents:
    return TextResourceContents(uri=uri, mime_type="application/json", text=json.dumps(payload, indent=2))
