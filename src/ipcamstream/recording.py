"""Segmented recording with a sliding-window HLS playlist.

:class:`SegmentWriter` consumes video frames while recording is on and
writes them into rotating container files ``segment<N>.<ext>``.  A segment
is finalized once the frame timestamps it holds span at least
``segment_duration`` seconds; the playlist is then rewritten to advertise
the most recent ``playlist_window`` finalized segments.

Layout of the output directory::

    playlist.m3u8
    segment0.mp4
    segment1.mp4
    ...

Containers are produced by a :class:`SegmentSink`.  The default
:class:`OpenCVSegmentSink` uses ``cv2.VideoWriter`` and carries video only;
a sink with ``supports_audio = True`` also receives audio frames when
``record_audio`` is enabled.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable

import cv2
import numpy as np

from .config import RecordingConfig
from .errors import EncodeFailure, SegmentIOFailure
from .frames import Frame, to_bgr
from .playlist import PLAYLIST_NAME, PlaylistEntry, render_playlist, write_playlist

logger = logging.getLogger(__name__)


class WriterState(Enum):
    IDLE = auto()
    WRITING = auto()


@dataclass(frozen=True)
class Segment:
    index: int
    path: Path
    duration: float
    size: int
    frames: int

    @property
    def name(self) -> str:
        return self.path.name


# ── Container sinks ─────────────────────────────────────────────────────────


class SegmentSink(ABC):
    """One open segment container."""

    supports_audio = False

    def __init__(self, path: Path, config: RecordingConfig) -> None:
        self.path = path
        self.config = config

    @abstractmethod
    def write_video(self, frame: Frame) -> None:
        """Append one video frame.  Raises EncodeFailure or SegmentIOFailure."""

    def write_audio(self, frame: Frame) -> None:
        """Append one audio sample buffer (only called if ``supports_audio``)."""

    @abstractmethod
    def close(self) -> None:
        """Flush and close the container.  Raises SegmentIOFailure."""


SinkFactory = Callable[[Path, RecordingConfig], SegmentSink]


class OpenCVSegmentSink(SegmentSink):
    """Video-only container written with ``cv2.VideoWriter``.

    The writer is created on the first frame so the container takes that
    frame's size; later frames of a different size are resized to match.
    """

    def __init__(self, path: Path, config: RecordingConfig) -> None:
        super().__init__(path, config)
        self._writer: cv2.VideoWriter | None = None
        self._size: tuple[int, int] | None = None
        self._check_free_space()

    def _check_free_space(self) -> None:
        try:
            free = shutil.disk_usage(self.path.parent).free
        except OSError as exc:
            raise SegmentIOFailure(f"cannot stat {self.path.parent}: {exc}", exc.errno) from exc
        if free < self.config.min_free_bytes:
            raise SegmentIOFailure(
                f"only {free} bytes free in {self.path.parent}", errno.ENOSPC
            )

    def _open(self, width: int, height: int) -> None:
        fourcc = cv2.VideoWriter_fourcc(*self.config.fourcc)
        writer = cv2.VideoWriter(str(self.path), fourcc, self.config.fps, (width, height))
        if not writer.isOpened():
            writer.release()
            raise SegmentIOFailure(
                f"cv2.VideoWriter could not open {self.path} ({self.config.fourcc})"
            )
        self._writer = writer
        self._size = (width, height)

    def write_video(self, frame: Frame) -> None:
        image = to_bgr(frame.data)
        h, w = image.shape[:2]
        try:
            if self._writer is None:
                # Most codecs want even dimensions
                self._open(w - w % 2 or 2, h - h % 2 or 2)
            if (w, h) != self._size:
                image = cv2.resize(image, self._size, interpolation=cv2.INTER_AREA)
            self._writer.write(np.ascontiguousarray(image))
        except cv2.error as exc:
            raise EncodeFailure(str(exc)) from exc

    def close(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None


# ── Segment writer ──────────────────────────────────────────────────────────


class SegmentWriter:
    """Rotating segment recorder: ``IDLE -> WRITING(segment N) -> IDLE``.

    All public methods are serialized by one lock, so frames may arrive on
    the frame-source thread while start/stop come from a control thread.
    """

    def __init__(
        self,
        config: RecordingConfig | None = None,
        sink_factory: SinkFactory | None = None,
    ) -> None:
        self.config = config or RecordingConfig()
        self._sink_factory: SinkFactory = sink_factory or OpenCVSegmentSink
        self._lock = threading.Lock()
        self._state = WriterState.IDLE
        self._index = 0
        self._sink: SegmentSink | None = None
        self._anchor = 0.0
        self._last_ts = 0.0
        self._frames = 0
        self._segments: list[Segment] = []
        self._audio_warned = False

    # -- Introspection -------------------------------------------------------

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def recording(self) -> bool:
        return self._state is WriterState.WRITING

    @property
    def segment_index(self) -> int:
        """Index of the segment currently being filled (or next to open)."""
        return self._index

    @property
    def segments(self) -> list[Segment]:
        """Finalized segments, oldest first."""
        with self._lock:
            return list(self._segments)

    @property
    def output_dir(self) -> Path:
        return Path(self.config.output_dir)

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / PLAYLIST_NAME

    def segment_path(self, index: int) -> Path:
        return self.output_dir / f"segment{index}.{self.config.extension}"

    def advertised(self) -> list[Segment]:
        """Segments the playlist currently lists."""
        with self._lock:
            return self._window_locked()

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Reset the output directory and begin recording at segment 0.

        Raises SegmentIOFailure if the directory or the initial playlist
        cannot be written; the writer then stays idle.
        """
        with self._lock:
            if self._state is WriterState.WRITING:
                return
            out = self.output_dir
            try:
                shutil.rmtree(out, ignore_errors=True)
                out.mkdir(parents=True, exist_ok=True)
                write_playlist(
                    self.playlist_path,
                    render_playlist([], self.config.segment_duration, 0),
                )
            except OSError as exc:
                raise SegmentIOFailure(f"cannot prepare {out}: {exc}", exc.errno) from exc

            self._index = 0
            self._segments = []
            self._sink = None
            self._frames = 0
            self._audio_warned = False
            self._state = WriterState.WRITING
            logger.info("Recording started in %s", out)

    def stop(self) -> list[Segment]:
        """Finalize any partial segment and go idle.  Idempotent."""
        with self._lock:
            if self._state is WriterState.IDLE:
                return list(self._segments)
            if self._sink is not None:
                if self._frames > 0:
                    duration = max(self._last_ts - self._anchor, 1.0 / self.config.fps)
                    self._finish_segment_locked(duration)
                else:
                    self._discard_sink_locked()
            self._state = WriterState.IDLE
            logger.info("Recording stopped after %d segment(s)", len(self._segments))
            return list(self._segments)

    # -- Frame ingestion -----------------------------------------------------

    def write(self, frame: Frame) -> bool:
        """Consume one frame.  Returns True if it went into a segment."""
        with self._lock:
            if self._state is not WriterState.WRITING:
                return False
            if frame.is_video:
                return self._write_video_locked(frame)
            return self._write_audio_locked(frame)

    def _write_audio_locked(self, frame: Frame) -> bool:
        if not self.config.record_audio or self._sink is None:
            return False
        if not self._sink.supports_audio:
            if not self._audio_warned:
                logger.warning(
                    "%s cannot mux audio; recording video only",
                    type(self._sink).__name__,
                )
                self._audio_warned = True
            return False
        try:
            self._sink.write_audio(frame)
        except EncodeFailure:
            logger.debug("Dropped audio frame at %.3f", frame.timestamp, exc_info=True)
            return False
        except SegmentIOFailure as exc:
            return self._handle_io_failure_locked(exc, "audio write")
        return True

    def _write_video_locked(self, frame: Frame) -> bool:
        if self._sink is None and not self._open_segment_locked(frame.timestamp):
            return False

        written = False
        try:
            self._sink.write_video(frame)
            self._frames += 1
            written = True
        except EncodeFailure:
            logger.debug("Dropped video frame at %.3f", frame.timestamp, exc_info=True)
        except SegmentIOFailure as exc:
            self._handle_io_failure_locked(exc, "video write")
            if self._state is not WriterState.WRITING:
                return False

        if written:
            self._last_ts = frame.timestamp
        elapsed = frame.timestamp - self._anchor
        if elapsed >= self.config.segment_duration and self._frames > 0:
            self._rotate_locked(elapsed)
        return written

    # -- Internals -----------------------------------------------------------

    def _open_segment_locked(self, timestamp: float) -> bool:
        path = self.segment_path(self._index)
        try:
            self._sink = self._sink_factory(path, self.config)
        except SegmentIOFailure as exc:
            self._handle_io_failure_locked(exc, f"opening segment {self._index}")
            return False
        self._anchor = timestamp
        self._last_ts = timestamp
        self._frames = 0
        logger.debug("Opened segment %d at t=%.3f", self._index, timestamp)
        return True

    def _rotate_locked(self, duration: float) -> None:
        self._finish_segment_locked(duration)
        if self._state is WriterState.WRITING:
            self._index += 1

    def _finish_segment_locked(self, duration: float) -> None:
        """Close the open sink, record the segment and republish the playlist."""
        sink, self._sink = self._sink, None
        frames, self._frames = self._frames, 0
        try:
            sink.close()
        except SegmentIOFailure as exc:
            if exc.errno == errno.ENOSPC:
                self._halt_locked(exc)
                return
            logger.warning("Segment %d could not be finalized: %s", self._index, exc)
            return

        path = sink.path
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        segment = Segment(self._index, path, duration, size, frames)
        self._segments.append(segment)
        logger.info(
            "Finalized %s (%.2fs, %d frames, %d bytes)", segment.name, duration, frames, size,
        )
        self._publish_playlist_locked()

    def _window_locked(self) -> list[Segment]:
        window = self._segments[-self.config.playlist_window:]
        return [s for s in window if s.size > self.config.min_segment_bytes]

    def _publish_playlist_locked(self) -> None:
        window = self._segments[-self.config.playlist_window:]
        advertised = self._window_locked()
        if advertised:
            sequence = advertised[0].index
        else:
            sequence = window[0].index if window else 0
        text = render_playlist(
            [PlaylistEntry(s.index, s.name, s.duration) for s in advertised],
            self.config.segment_duration,
            sequence,
        )
        try:
            write_playlist(self.playlist_path, text)
        except OSError as exc:
            # Next rotation rewrites the whole window
            self._handle_io_failure_locked(
                SegmentIOFailure(f"playlist write failed: {exc}", exc.errno),
                "playlist update",
            )

    def _discard_sink_locked(self) -> None:
        sink, self._sink = self._sink, None
        try:
            sink.close()
        except SegmentIOFailure:
            logger.debug("Error closing empty segment", exc_info=True)
        try:
            sink.path.unlink(missing_ok=True)
        except OSError:
            logger.debug("Could not remove empty segment %s", sink.path, exc_info=True)

    def _handle_io_failure_locked(self, exc: SegmentIOFailure, during: str) -> bool:
        if exc.errno == errno.ENOSPC:
            self._halt_locked(exc)
        else:
            logger.warning("Recording I/O error during %s: %s", during, exc)
        return False

    def _halt_locked(self, exc: SegmentIOFailure) -> None:
        """Disk full: stop recording, leave the last good playlist in place."""
        logger.error("Recording stopped, disk full: %s", exc)
        if self._sink is not None:
            sink, self._sink = self._sink, None
            try:
                sink.close()
            except SegmentIOFailure:
                pass
        self._frames = 0
        self._state = WriterState.IDLE
