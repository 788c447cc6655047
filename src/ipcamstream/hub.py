"""Live MJPEG fan-out to every connected viewer.

The frame pipeline calls :meth:`StreamHub.publish` once per encoded frame.
Each subscriber gets one ``multipart/x-mixed-replace`` part per frame,
written synchronously under the hub lock with a per-write deadline.  A
viewer whose write fails or times out is removed in that same pass and its
socket closed, so a stalled client costs at most one ``write_timeout`` and
never receives another frame.

Subscribing, unsubscribing and publishing all take the same lock, so a
viewer removed during a pass never sees that frame and a subscribe that
returned before ``publish`` was called is always part of the pass.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .errors import WriteFailure
from .registry import Connection
from .wire import multipart_part, stream_preamble

logger = logging.getLogger(__name__)


class StreamHub:
    """Owns the set of live viewer connections.

    Usage::

        hub = StreamHub(boundary="ipcamframe")
        hub.subscribe(conn)      # after the router classified GET /stream
        hub.publish(jpeg_bytes)  # from the frame thread, once per frame
        hub.shutdown()
    """

    def __init__(
        self,
        boundary: str = "ipcamframe",
        write_timeout: float = 1.0,
        on_active_change: Callable[[bool], None] | None = None,
        on_evict: Callable[[Connection], None] | None = None,
    ) -> None:
        self._boundary = boundary.encode("ascii")
        self._preamble = stream_preamble(boundary)
        self._write_timeout = write_timeout
        self._on_active_change = on_active_change
        self._on_evict = on_evict
        self._subscribers: dict[int, Connection] = {}
        self._lock = threading.Lock()
        self.frames_published = 0
        self.evicted = 0

    @property
    def boundary(self) -> str:
        return self._boundary.decode("ascii")

    @property
    def active(self) -> bool:
        """True while at least one viewer is subscribed."""
        return bool(self._subscribers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __contains__(self, conn: Connection) -> bool:
        with self._lock:
            return conn.id in self._subscribers

    def subscribe(self, conn: Connection) -> bool:
        """Send the multipart preamble to ``conn`` and start feeding it frames.

        Returns False (and closes ``conn``) if the preamble could not be
        written.
        """
        try:
            conn.send(self._preamble, timeout=self._write_timeout)
        except WriteFailure:
            logger.debug("Viewer #%d gone before stream start", conn.id)
            self._drop(conn)
            return False

        with self._lock:
            was_empty = not self._subscribers
            self._subscribers[conn.id] = conn
            count = len(self._subscribers)
        logger.info("Viewer #%d subscribed (%d watching)", conn.id, count)
        if was_empty:
            self._notify_active(True)
        return True

    def unsubscribe(self, conn: Connection) -> bool:
        """Remove ``conn``.  Returns False if it was not subscribed."""
        with self._lock:
            removed = self._subscribers.pop(conn.id, None) is not None
            now_empty = removed and not self._subscribers
            count = len(self._subscribers)
        if removed:
            logger.info("Viewer #%d unsubscribed (%d watching)", conn.id, count)
        if now_empty:
            self._notify_active(False)
        return removed

    def publish(self, jpeg: bytes) -> int:
        """Write one frame to every viewer.  Returns how many received it."""
        part = multipart_part(self._boundary, jpeg)
        failed: list[Connection] = []
        delivered = 0
        with self._lock:
            if not self._subscribers:
                return 0
            for conn in list(self._subscribers.values()):
                try:
                    conn.send(part, timeout=self._write_timeout)
                    delivered += 1
                except WriteFailure as exc:
                    logger.info("Evicting viewer #%d: %s", conn.id, exc.__cause__ or exc)
                    del self._subscribers[conn.id]
                    failed.append(conn)
            self.frames_published += 1
            self.evicted += len(failed)
            now_empty = bool(failed) and not self._subscribers

        for conn in failed:
            self._drop(conn)
        if now_empty:
            self._notify_active(False)
        return delivered

    def shutdown(self) -> int:
        """Close every viewer and clear the set.  Safe with no viewers."""
        with self._lock:
            connections = list(self._subscribers.values())
            self._subscribers.clear()
        for conn in connections:
            self._drop(conn)
        if connections:
            logger.info("Stream hub closed %d viewer(s)", len(connections))
            self._notify_active(False)
        return len(connections)

    def _drop(self, conn: Connection) -> None:
        conn.close()
        if self._on_evict is not None:
            try:
                self._on_evict(conn)
            except Exception:
                logger.warning("Evict callback failed for viewer #%d", conn.id, exc_info=True)

    def _notify_active(self, active: bool) -> None:
        if self._on_active_change is None:
            return
        try:
            self._on_active_change(active)
        except Exception:
            logger.warning("Hub activity callback failed", exc_info=True)
