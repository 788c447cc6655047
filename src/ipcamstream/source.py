"""Synthetic frame source producing a moving test card.

Stands in for a real camera when running the server standalone.  Frames
are generated in a background thread and pushed to a sink callable
(normally ``CameraServer.submit_frame``).  The source also reacts to the
server's control events, the way a capture owner would.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import cv2
import numpy as np

from .events import RESOLUTION_SIZES, ControlEvent, EventKind
from .frames import Frame, MediaKind

logger = logging.getLogger(__name__)

FrameSink = Callable[[Frame], object]

_AUDIO_RATE = 16000


def make_test_card(width: int, height: int, t: float = 0.0, label: str = "") -> np.ndarray:
    """Grey card with a border, colour bars, a sweeping bar and a clock."""
    card = np.full((height, width, 3), 128, dtype=np.uint8)
    bars = [
        (192, 192, 192), (0, 192, 192), (192, 192, 0), (0, 192, 0),
        (192, 0, 192), (0, 0, 192), (192, 0, 0),
    ]
    bar_w = max(1, width // len(bars))
    top, bottom = height // 6, height // 2
    for i, color in enumerate(bars):
        cv2.rectangle(card, (i * bar_w, top), ((i + 1) * bar_w - 1, bottom), color, -1)

    sweep_x = int((t * 0.25 % 1.0) * width)
    cv2.rectangle(card, (sweep_x, bottom + 10), (min(width - 1, sweep_x + 20), height - 40), (255, 255, 255), -1)
    cv2.rectangle(card, (2, 2), (width - 3, height - 3), (200, 200, 200), 1)

    text = time.strftime("%H:%M:%S") + f"  t={t:7.2f}s"
    if label:
        text += f"  {label}"
    scale = max(0.4, width / 1600)
    cv2.putText(card, text, (10, height - 12), cv2.FONT_HERSHEY_SIMPLEX, scale, (255, 255, 255), 1, cv2.LINE_AA)
    return card


class TestCardSource:
    """Pushes test-card frames at a fixed rate from a background thread.

    ``video_enabled`` / ``audio_enabled`` and the frame size follow the
    control events passed to :meth:`handle_event`.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        sink: FrameSink,
        width: int = 1280,
        height: int = 720,
        fps: float = 15.0,
    ) -> None:
        self._sink = sink
        self._size = (width, height)
        self._fps = fps
        self._label = ""
        self.video_enabled = True
        self.audio_enabled = False
        self._thread: threading.Thread | None = None
        self._running = threading.Event()

    @property
    def size(self) -> tuple[int, int]:
        return self._size

    def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="test-card", daemon=True)
        self._thread.start()
        logger.info("Test card source running at %.1f fps (%dx%d)", self._fps, *self._size)

    def stop(self) -> None:
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def handle_event(self, event: ControlEvent) -> None:
        """React to a control event from the HTTP API."""
        if event.kind is EventKind.TOGGLE_VIDEO:
            self.video_enabled = not self.video_enabled
            logger.info("Video %s", "enabled" if self.video_enabled else "disabled")
        elif event.kind is EventKind.TOGGLE_AUDIO:
            self.audio_enabled = not self.audio_enabled
            logger.info("Audio %s", "enabled" if self.audio_enabled else "disabled")
        elif event.kind is EventKind.CHANGE_RESOLUTION:
            size = RESOLUTION_SIZES.get(event.value or "")
            if size is None:
                logger.info("Ignoring unknown resolution %r", event.value)
                return
            self._size = size
            self._label = event.value
            logger.info("Resolution changed to %s (%dx%d)", event.value, *size)

    def _run(self) -> None:
        interval = 1.0 / self._fps
        t0 = time.monotonic()
        next_due = t0
        samples = int(_AUDIO_RATE * interval)
        while self._running.is_set():
            now = time.monotonic()
            if now < next_due:
                time.sleep(next_due - now)
                continue
            next_due = max(next_due + interval, now)
            ts = now - t0
            try:
                if self.video_enabled:
                    w, h = self._size
                    self._sink(Frame(make_test_card(w, h, ts, self._label), ts, MediaKind.VIDEO))
                if self.audio_enabled:
                    silence = np.zeros(samples, dtype=np.int16).tobytes()
                    self._sink(Frame(silence, ts, MediaKind.AUDIO))
            except Exception:
                logger.warning("Frame sink failed", exc_info=True)
