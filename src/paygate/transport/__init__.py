"""Streamable HTTP transport: one SessionTransport per session, multiplexed by a SessionTable."""

from paygate.transport.httphandler import StreamableHTTPHandler
from paygate.transport.session_table import SessionTable
from paygate.transport.starlette import create_starlette_app
from paygate.transport.transport import SessionTransport, TransportState

__all__ = ["SessionTable", "SessionTransport", "StreamableHTTPHandler", "TransportState", "create_starlette_app"]
