"""Registry of open sessions, shared by every concurrently handled HTTP request."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING
from uuid import uuid4

from paygate.exceptions import DuplicateSessionError

if TYPE_CHECKING:
    from paygate.transport.transport import SessionTransport

logger = logging.getLogger(__name__)


class SessionTable:
    """Maps session ids to their owning transports.

    The table is the only mutable state shared across sessions. Every
    operation takes the same lock, so it stays consistent whether requests are
    interleaved on one event loop or handled from worker threads. Callers that
    look a transport up and then suspend must re-check the transport's state
    after resuming: another request may have closed it meanwhile.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transports: dict[str, SessionTransport] = {}

    def new_session_id(self) -> str:
        """Generate an unpredictable id not used by any open session."""
        while True:
            session_id = uuid4().hex
            with self._lock:
                if session_id not in self._transports:
                    return session_id

    def register(self, session_id: str, transport: SessionTransport) -> None:
        """Insert *transport* under *session_id*.

        Raises:
            DuplicateSessionError: if the id is already registered. The existing
                entry is left untouched.
        """
        with self._lock:
            if session_id in self._transports:
                logger.error("Refusing to register duplicate session id %s", session_id)
                raise DuplicateSessionError(f"Session {session_id} is already registered")
            self._transports[session_id] = transport
        logger.debug("Registered session %s", session_id)

    def lookup(self, session_id: str) -> SessionTransport | None:
        with self._lock:
            return self._transports.get(session_id)

    def remove(self, session_id: str) -> SessionTransport | None:
        """Drop *session_id*. Removing an id that is not present is a no-op."""
        with self._lock:
            transport = self._transports.pop(session_id, None)
        if transport is not None:
            logger.debug("Removed session %s", session_id)
        return transport

    def snapshot(self) -> list[SessionTransport]:
        with self._lock:
            return list(self._transports.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._transports)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._transports

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._transports))
