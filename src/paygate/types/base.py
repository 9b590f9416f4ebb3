"""Shared protocol models: base classes, implementation info and capabilities."""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field

LATEST_PROTOCOL_VERSION: Final[str] = "2025-11-25"

SUPPORTED_PROTOCOL_VERSIONS: Final[tuple[str, ...]] = (
    LATEST_PROTOCOL_VERSION,
    "2025-06-18",
    "2025-03-26",
)


class ProtocolModel(BaseModel):
    """Base class for protocol payloads. Unknown fields are kept for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        """Serialize with wire (camelCase) names, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Meta(ProtocolModel):
    """Free-form `_meta` block."""


class RequestParams(ProtocolModel):
    """Base class for request parameters with `_meta` support."""

    meta: Annotated[dict[str, Any] | None, Field(alias="_meta")] = None


class Result(ProtocolModel):
    """Base class for results with `_meta` support."""

    meta: Annotated[Meta | None, Field(alias="_meta")] = None


class Annotations(ProtocolModel):
    """Optional audience/priority hints attached to content and resources."""

    audience: list[Literal["user", "assistant"]] | None = None
    priority: Annotated[float | None, Field(ge=0.0, le=1.0)] = None
    last_modified: Annotated[str | None, Field(alias="lastModified")] = None


class Implementation(ProtocolModel):
    """Name and version of a client or server implementation."""

    name: str
    version: str
    title: str | None = None


class ClientCapabilities(ProtocolModel):
    """Capabilities a client may announce during initialization."""

    experimental: dict[str, Any] | None = None
    roots: dict[str, Any] | None = None
    sampling: dict[str, Any] | None = None
    elicitation: dict[str, Any] | None = None


class ServerCapabilities(ProtocolModel):
    """Capabilities the gateway announces during initialization."""

    experimental: dict[str, Any] | None = None
    logging: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    tools: dict[str, Any] | None = None
