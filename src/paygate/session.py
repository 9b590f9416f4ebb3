"""Protocol-level session state negotiated by the initialize handshake."""

from __future__ import annotations

from dataclasses import dataclass

from paygate.types.base import ClientCapabilities, Implementation


@dataclass(frozen=True)
class SessionInfo:
    """Immutable handshake outcome for one session.

    Pure data. Transport-level state (lifecycle, pending requests, streams)
    lives on the SessionTransport that owns the session.
    """

    session_id: str
    client_info: Implementation
    client_capabilities: ClientCapabilities
    protocol_version: str
