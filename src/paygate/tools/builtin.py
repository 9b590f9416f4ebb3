"""Local tools that need no provider credentials."""

from __future__ import annotations

import logging
import random
from typing import Any

from paygate.context import RequestContext
from paygate.tools.registry import ToolRegistry
from paygate.types.tools import CallToolResult, ToolAnnotations

logger = logging.getLogger(__name__)

_TEMPERATURES = (15, 18, 22, 25, 28, 20, 16)
_CONDITIONS = ("sunny", "cloudy", "rainy", "partly cloudy")


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def register_builtin_tools(registry: ToolRegistry) -> None:
    @registry.tool(
        "echo",
        title="Echo",
        description="Echo back the provided message",
        input_schema={
            "type": "object",
            "properties": {"message": {"type": "string"}},
            "required": ["message"],
        },
        annotations=ToolAnnotations(read_only_hint=True),
    )
    async def echo(ctx: RequestContext, arguments: dict[str, Any]) -> str:
        return f"Echo: {arguments['message']}"

    @registry.tool(
        "calculate",
        title="Calculator",
        description="Perform basic arithmetic operations",
        input_schema={
            "type": "object",
            "properties": {
                "operation": {"type": "string", "enum": ["add", "subtract", "multiply", "divide"]},
                "a": {"type": "number"},
                "b": {"type": "number"},
            },
            "required": ["operation", "a", "b"],
        },
        annotations=ToolAnnotations(read_only_hint=True),
    )
    async def calculate(ctx: RequestContext, arguments: dict[str, Any]) -> CallToolResult:
        operation = arguments["operation"]
        a, b = arguments["a"], arguments["b"]
        logger.debug("calculate %s(%s, %s)", operation, a, b)
        match operation:
            case "add":
                result = a + b
            case "subtract":
                result = a - b
            case "multiply":
                result = a * b
            case _:
                if b == 0:
                    return CallToolResult.error("Error: Division by zero")
                result = a / b
        return CallToolResult.text(f"{_format_number(a)} {operation} {_format_number(b)} = {_format_number(result)}")

    @registry.tool(
        "get-weather",
        title="Get Weather",
        description="Get simulated weather data for a city",
        input_schema={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    )
    async def get_weather(ctx: RequestContext, arguments: dict[str, Any]) -> str:
        temperature = random.choice(_TEMPERATURES)
        condition = random.choice(_CONDITIONS)
        return f"Weather in {arguments['city']}: {temperature}°C, {condition}"
