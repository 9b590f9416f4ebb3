"""Types for tool listing and invocation, including result content blocks."""

from typing import Annotated, Any, Literal

from pydantic import Field

from paygate.types.base import Annotations, Meta, ProtocolModel, RequestParams, Result


class TextContent(ProtocolModel):
    """Text produced by a tool."""

    type: Literal["text"] = "text"
    text: str
    annotations: Annotations | None = None
    meta: Annotated[Meta | None, Field(alias="_meta")] = None


class ImageContent(ProtocolModel):
    """An image produced by a tool (base64 encoded)."""

    type: Literal["image"] = "image"
    data: str
    mime_type: Annotated[str, Field(alias="mimeType")]
    annotations: Annotations | None = None
    meta: Annotated[Meta | None, Field(alias="_meta")] = None


ContentBlock = Annotated[TextContent | ImageContent, Field(discriminator="type")]


class ToolAnnotations(ProtocolModel):
    """Additional properties describing a Tool to clients."""

    destructive_hint: Annotated[bool | None, Field(alias="destructiveHint")] = None
    idempotent_hint: Annotated[bool | None, Field(alias="idempotentHint")] = None
    open_world_hint: Annotated[bool | None, Field(alias="openWorldHint")] = None
    read_only_hint: Annotated[bool | None, Field(alias="readOnlyHint")] = None
    title: str | None = None


class Tool(ProtocolModel):
    """Definition of a tool as advertised by ``tools/list``."""

    name: str
    input_schema: Annotated[dict[str, Any], Field(alias="inputSchema")]
    title: str | None = None
    description: str | None = None
    annotations: ToolAnnotations | None = None


class ListToolsRequestParams(RequestParams):
    cursor: str | None = None


class ListToolsResult(Result):
    tools: list[Tool]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class CallToolRequestParams(RequestParams):
    """Parameters for ``tools/call``."""

    name: str
    arguments: dict[str, Any] | None = None


class CallToolResult(Result):
    """Outcome of a tool invocation. ``is_error`` marks an error-shaped result."""

    content: list[ContentBlock]
    structured_content: Annotated[dict[str, Any] | None, Field(alias="structuredContent")] = None
    is_error: Annotated[bool, Field(alias="isError")] = False

    @classmethod
    def text(cls, text: str, *, is_error: bool = False) -> "CallToolResult":
        return cls(content=[TextContent(text=text)], is_error=is_error)

    @classmethod
    def error(cls, message: str) -> "CallToolResult":
        return cls.text(message, is_error=True)
