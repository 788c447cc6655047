"""Control events sent from the HTTP API to the frame source owner.

The router never talks to the capture side directly.  It emits typed
:class:`ControlEvent` objects into an :class:`EventDispatcher`, which
delivers them on its own thread to whoever registered as a listener.
Delivery is fire-and-forget: the router does not wait for the listener and
learns nothing about the resulting state.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

# Labels the bundled capture side understands.  Anything else is still
# forwarded; the listener decides whether to ignore it.
RESOLUTION_LABELS = (
    "Low (480p)",
    "Medium (720p)",
    "HD (720p)",
    "Full HD (1080p)",
    "4K (2160p)",
)

RESOLUTION_SIZES = {
    "Low (480p)": (640, 480),
    "Medium (720p)": (1280, 720),
    "HD (720p)": (1280, 720),
    "Full HD (1080p)": (1920, 1080),
    "4K (2160p)": (3840, 2160),
}


class EventKind(Enum):
    TOGGLE_VIDEO = "toggle_video"
    TOGGLE_AUDIO = "toggle_audio"
    TOGGLE_RECORDING = "toggle_recording"
    CHANGE_RESOLUTION = "change_resolution"


@dataclass(frozen=True)
class ControlEvent:
    kind: EventKind
    value: str | None = None

    @classmethod
    def change_resolution(cls, label: str) -> ControlEvent:
        return cls(EventKind.CHANGE_RESOLUTION, label)


EventListener = Callable[[ControlEvent], None]


class _Flush:
    """Queue marker used by :meth:`EventDispatcher.flush`."""

    def __init__(self) -> None:
        self.done = threading.Event()


_STOP = object()


class EventDispatcher:
    """Asynchronous single-consumer delivery of control events.

    ``emit()`` only enqueues; one daemon thread pops events and calls every
    registered listener in registration order.  A listener that raises is
    logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._listeners_lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._thread_lock = threading.Lock()
        self._emitted = 0

    @property
    def emitted(self) -> int:
        return self._emitted

    def add_listener(self, listener: EventListener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, event: ControlEvent) -> None:
        """Queue ``event`` for delivery and return immediately."""
        self._ensure_thread()
        self._emitted += 1
        logger.debug("Control event queued: %s %s", event.kind.value, event.value or "")
        self._queue.put(event)

    def flush(self, timeout: float = 2.0) -> bool:
        """Block until every event emitted so far has been delivered."""
        if self._thread is None:
            return True
        marker = _Flush()
        self._queue.put(marker)
        return marker.done.wait(timeout)

    def stop(self, timeout: float = 2.0) -> None:
        """Deliver what is queued, then stop the delivery thread."""
        with self._thread_lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)

    def _ensure_thread(self) -> None:
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="control-events", daemon=True
            )
            self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, _Flush):
                item.done.set()
                continue
            with self._listeners_lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(item)
                except Exception:
                    logger.warning(
                        "Control event listener failed for %s", item.kind.value,
                        exc_info=True,
                    )
