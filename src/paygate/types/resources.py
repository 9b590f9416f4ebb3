"""Types for resource listing and reading."""

from typing import Annotated

from pydantic import Field

from paygate.types.base import Annotations, Meta, ProtocolModel, RequestParams, Result


class TextResourceContents(ProtocolModel):
    """Text contents of a resource."""

    uri: str
    mime_type: Annotated[str | None, Field(alias="mimeType")] = None
    text: str
    meta: Annotated[Meta | None, Field(alias="_meta")] = None


class Resource(ProtocolModel):
    """A known resource that the gateway can read."""

    uri: str
    name: str
    title: str | None = None
    description: str | None = None
    mime_type: Annotated[str | None, Field(alias="mimeType")] = None
    annotations: Annotations | None = None


class ResourceTemplate(ProtocolModel):
    """A parameterized family of resources, e.g. ``status://{component}``."""

    uri_template: Annotated[str, Field(alias="uriTemplate")]
    name: str
    title: str | None = None
    description: str | None = None
    mime_type: Annotated[str | None, Field(alias="mimeType")] = None


class ListResourcesResult(Result):
    resources: list[Resource]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class ListResourceTemplatesResult(Result):
    resource_templates: Annotated[list[ResourceTemplate], Field(alias="resourceTemplates")]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class ReadResourceRequestParams(RequestParams):
    uri: str


class ReadResourceResult(Result):
    contents: list[TextResourceContents]
