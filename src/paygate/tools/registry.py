"""Static registry of tools: name -> (input schema, handler)."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio
import jsonschema
from pydantic import BaseModel

from paygate.context import RequestContext
from paygate.exceptions import ToolError
from paygate.types.json_rpc import JSONRPCRequest
from paygate.types.tools import (
    CallToolRequestParams,
    CallToolResult,
    ContentBlock,
    ListToolsResult,
    TextContent,
    Tool,
    ToolAnnotations,
)

if TYPE_CHECKING:
    from paygate.server import GatewayServer

logger = logging.getLogger(__name__)

ToolOutput = CallToolResult | str | dict[str, Any] | list[ContentBlock]
ToolHandler = Callable[[RequestContext, dict[str, Any]], Awaitable[ToolOutput]]

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class RegisteredTool:
    """One entry of the registry."""

    name: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_SCHEMA))
    title: str | None = None
    description: str | None = None
    annotations: ToolAnnotations | None = None
    timeout: float | None = None

    def definition(self) -> Tool:
        return Tool(
            name=self.name,
            title=self.title,
            description=self.description,
            input_schema=self.input_schema,
            annotations=self.annotations,
        )


class ToolRegistry:
    """Name-keyed table of tools, fixed at startup.

    Dispatch never raises: an unknown name, invalid arguments, a handler
    exception or a timeout all come back as an error-shaped CallToolResult.
    Invocations share no state through the registry, so any number of them
    can run concurrently on the same session.
    """

    def __init__(self, *, timeout: float | None = None, tools: Iterable[RegisteredTool] = ()) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self.timeout = timeout
        for tool in tools:
            self.add(tool)

    def add(self, tool: RegisteredTool) -> RegisteredTool:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        jsonschema.validators.validator_for(tool.input_schema).check_schema(tool.input_schema)
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)
        return tool

    def tool(
        self,
        name: str,
        *,
        input_schema: dict[str, Any] | None = None,
        title: str | None = None,
        description: str | None = None,
        annotations: ToolAnnotations | None = None,
        timeout: float | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering *fn* as the handler for tool *name*."""

        def decorator(fn: ToolHandler) -> ToolHandler:
            self.add(
                RegisteredTool(
                    name=name,
                    handler=fn,
                    input_schema=input_schema if input_schema is not None else dict(EMPTY_SCHEMA),
                    title=title,
                    description=description or fn.__doc__,
                    annotations=annotations,
                    timeout=timeout,
                )
            )
            return fn

        return decorator

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def list_tools(self) -> list[Tool]:
        return [tool.definition() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def call(self, ctx: RequestContext, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        """Validate *arguments* and run the named tool, converting every failure into an error result."""
        tool = self._tools.get(name)
        if tool is None:
            return CallToolResult.error(f"Unknown tool: {name}")

        arguments = arguments or {}
        try:
            jsonschema.validate(instance=arguments, schema=tool.input_schema)
        except jsonschema.ValidationError as e:
            return CallToolResult.error(f"Input validation error: {e.message}")

        timeout = tool.timeout if tool.timeout is not None else self.timeout
        try:
            if timeout is None:
                output = await tool.handler(ctx, arguments)
            else:
                with anyio.fail_after(timeout):
                    output = await tool.handler(ctx, arguments)
        except TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, timeout)
            return CallToolResult.error(f"Tool {name} timed out after {timeout:g} seconds")
        except ToolError as e:
            logger.info("Tool %s failed: %s", name, e)
            return CallToolResult.error(f"Error executing tool {name}: {e}")
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return CallToolResult.error(f"Error executing tool {name}: {e}")

        return _to_result(name, output)

    def install(self, server: GatewayServer) -> None:
        """Answer ``tools/list`` and ``tools/call`` on *server* from this registry."""

        @server.request_handler("tools/list")
        async def list_tools(ctx: RequestContext, request: JSONRPCRequest) -> ListToolsResult:
            return ListToolsResult(tools=self.list_tools())

        @server.request_handler("tools/call")
        async def call_tool(ctx: RequestContext, request: JSONRPCRequest) -> CallToolResult:
            params = CallToolRequestParams.model_validate(request.params or {})
            return await self.call(ctx, params.name, params.arguments)


def _to_result(name: str, output: ToolOutput) -> CallToolResult:
    if isinstance(output, CallToolResult):
        return output
    if isinstance(output, str):
        return CallToolResult.text(output)
    if isinstance(output, dict):
        return CallToolResult(
            content=[TextContent(text=json.dumps(output, indent=2))],
            structured_content=output,
        )
    if isinstance(output, list) and all(isinstance(block, BaseModel) for block in output):
        return CallToolResult(content=output)
    return CallToolResult.error(f"Unexpected return type from tool {name}: {type(output).__name__}")
