"""Bookkeeping for every accepted socket.

Each accepted socket becomes a :class:`Connection` with a process-unique
integer id.  The :class:`ConnectionRegistry` maps ids to connections so a
server stop can force-close everything that is still open, including
sockets owned by the stream hub and sockets blocked mid-request.

Removal may be requested by several paths (the request worker, the hub's
write-failure detection, an explicit close) and is idempotent.
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from enum import Enum, auto

from .errors import WriteFailure

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class ConnectionKind(Enum):
    TRANSIENT = auto()   # one request, one response
    STREAMING = auto()   # owned by the stream hub until it fails


class Connection:
    """One accepted TCP socket."""

    def __init__(self, sock: socket.socket, peer: tuple | str | None = None) -> None:
        self.id: int = next(_ids)
        self.peer = peer
        self.kind = ConnectionKind.TRANSIENT
        self.last_error: BaseException | None = None
        self._sock = sock
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection #{self.id} {self.kind.name.lower()} {self.peer} {state}>"

    @property
    def sock(self) -> socket.socket:
        return self._sock

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: bytes, timeout: float | None = None) -> None:
        """Write all of ``data`` within ``timeout`` seconds.

        Raises :class:`WriteFailure` if the connection is closed, the peer
        went away, or the deadline passed.  The failure is remembered in
        ``last_error``; the caller decides whether to close.
        """
        if self._closed:
            raise WriteFailure(f"connection #{self.id} is closed")
        try:
            self._sock.settimeout(timeout)
            self._sock.sendall(data)
        except (OSError, ValueError) as exc:
            self.last_error = exc
            raise WriteFailure(f"write to connection #{self.id} failed: {exc}") from exc

    def close(self) -> None:
        """Shut down and close the socket.  Safe to call repeatedly."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        try:
            self._sock.close()
        except OSError:
            logger.debug("Error closing connection #%d", self.id, exc_info=True)


class ConnectionRegistry:
    """Thread-safe map of connection id to :class:`Connection`."""

    def __init__(self) -> None:
        self._connections: dict[int, Connection] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, conn_id: int) -> bool:
        with self._lock:
            return conn_id in self._connections

    def add(self, conn: Connection) -> None:
        with self._lock:
            self._connections[conn.id] = conn

    def get(self, conn_id: int) -> Connection | None:
        with self._lock:
            return self._connections.get(conn_id)

    def remove(self, conn_id: int) -> Connection | None:
        """Forget a connection.  Returns it, or None if already removed."""
        with self._lock:
            return self._connections.pop(conn_id, None)

    def mark_streaming(self, conn_id: int) -> None:
        with self._lock:
            conn = self._connections.get(conn_id)
            if conn is not None:
                conn.kind = ConnectionKind.STREAMING

    def counts(self) -> dict[str, int]:
        with self._lock:
            streaming = sum(
                1 for c in self._connections.values() if c.kind is ConnectionKind.STREAMING
            )
            return {
                "transient": len(self._connections) - streaming,
                "streaming": streaming,
            }

    def close_all(self) -> int:
        """Force-close and forget every tracked connection."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            conn.close()
        if connections:
            logger.info("Force-closed %d connection(s)", len(connections))
        return len(connections)
