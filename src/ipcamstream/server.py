"""Camera HTTP server: listener, router, stream hub and recorder wired together.

The frame source pushes frames via ``submit_frame()``; connected viewers
receive them as an MJPEG stream and, while recording is on, the raw frames
go to the segment writer.  Control requests from viewers come back out as
:class:`~ipcamstream.events.ControlEvent` objects delivered to listeners
registered with ``add_control_listener()``.

Usage::

    server = CameraServer(ServerConfig(port=8080))
    server.add_control_listener(on_event)
    server.start_server()
    server.submit_frame(Frame(bgr, timestamp))   # from the capture thread
    server.stop_server()
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from pathlib import Path

from .config import ServerConfig
from .errors import EncodeFailure, ParseFailure, SegmentIOFailure, WriteFailure
from .events import ControlEvent, EventDispatcher, EventKind, EventListener
from .frames import Frame, FrameData, MediaKind, encode_jpeg
from .hub import StreamHub
from .listener import Listener
from .recording import SegmentWriter, SinkFactory
from .registry import Connection, ConnectionRegistry
from .router import Router
from .wire import build_response, read_request

logger = logging.getLogger(__name__)


class CameraServer:
    """Owns the server state: listener, connections, viewers and recording."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        sink_factory: SinkFactory | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.events = EventDispatcher()
        self.registry = ConnectionRegistry()
        self.hub = StreamHub(
            boundary=self.config.boundary,
            write_timeout=self.config.write_timeout,
            on_active_change=self._on_hub_active,
            on_evict=self._forget,
        )
        self.recorder = SegmentWriter(self.config.recording, sink_factory)
        self.router = Router(
            self.events,
            status_provider=self.status,
            hls_dir_provider=self._hls_dir,
            segment_extension=self.config.recording.extension,
        )
        self._listener: Listener | None = None
        self._lifecycle = threading.Lock()
        self._started_at: float | None = None
        # Set by stop_server; late control events must not restart recording
        self._stopped = False

        # Non-blocking encode guard: submit_frame drops the frame if the
        # previous one is still being encoded.
        self._encoding = threading.Lock()
        self.frames_dropped = 0

        # Last state requested through the control API (not confirmed by
        # the frame source).
        self._video_enabled = True
        self._audio_enabled = True
        self._resolution: str | None = None

        self.events.add_listener(self._on_control_event)

    # -- Properties ----------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and self._listener.is_listening

    @property
    def port(self) -> int:
        if self._listener is not None:
            return self._listener.port
        return self.config.port

    @property
    def recording(self) -> bool:
        return self.recorder.recording

    def add_control_listener(self, listener: EventListener) -> None:
        """Register the frame source owner for control events."""
        self.events.add_listener(listener)

    def remove_control_listener(self, listener: EventListener) -> None:
        self.events.remove_listener(listener)

    # -- Lifecycle -----------------------------------------------------------

    def start_server(self) -> None:
        """Bind the port and start accepting viewers.

        Raises :class:`~ipcamstream.errors.BindFailure` if the port is
        unavailable; the server then stays stopped.
        """
        with self._lifecycle:
            if self.is_listening:
                return
            listener = Listener(
                self.config.host,
                self.config.port,
                self._handle_connection,
                accept_timeout=self.config.accept_timeout,
            )
            listener.start()
            self._listener = listener
            self._stopped = False
            self._started_at = time.monotonic()
            logger.info(
                "CameraServer: started on port %d (endpoints: /, /stream, /status, /settings/*)",
                listener.port,
            )

    def stop_server(self) -> None:
        """Stop accepting, drop every connection, finalize recording.

        Idempotent and safe to call when nothing is running.
        """
        with self._lifecycle:
            self._stopped = True
            listener, self._listener = self._listener, None
            if listener is not None:
                listener.stop()
            closed = self.registry.close_all()
            self.hub.shutdown()
            # Queued control events are drained before the recorder stops
            self.events.stop()
            self.recorder.stop()
            self._started_at = None
            if listener is not None:
                logger.info("CameraServer: stopped (%d connection(s) closed)", closed)

    # -- Frame ingestion -----------------------------------------------------

    def submit_frame(
        self,
        frame: Frame | FrameData,
        timestamp: float | None = None,
        kind: MediaKind = MediaKind.VIDEO,
    ) -> int:
        """Push one frame from the frame source.

        Accepts a :class:`Frame`, or raw BGR array / JPEG bytes plus an
        optional ``timestamp`` (defaults to the monotonic clock).  Returns
        how many viewers received the frame.

        Thread-safe; never blocks for longer than one per-viewer write
        deadline.
        """
        if not isinstance(frame, Frame):
            frame = Frame(frame, time.monotonic() if timestamp is None else timestamp, kind)

        if self.recorder.recording:
            self.recorder.write(frame)

        if not frame.is_video or not self.hub.active:
            return 0
        if not self._encoding.acquire(blocking=False):
            self.frames_dropped += 1
            return 0
        try:
            jpeg = encode_jpeg(frame.data, self.config.jpeg_quality)
            return self.hub.publish(jpeg)
        except EncodeFailure:
            self.frames_dropped += 1
            logger.debug("Dropped frame at %.3f: encode failed", frame.timestamp, exc_info=True)
            return 0
        finally:
            self._encoding.release()

    # -- Status --------------------------------------------------------------

    def status(self) -> dict:
        uptime = 0.0 if self._started_at is None else time.monotonic() - self._started_at
        return {
            "status": "ok",
            "listening": self.is_listening,
            "port": self.port,
            "viewers": len(self.hub),
            "connections": self.registry.counts(),
            "recording": self.recorder.recording,
            "video_enabled": self._video_enabled,
            "audio_enabled": self._audio_enabled,
            "resolution": self._resolution,
            "frames_published": self.hub.frames_published,
            "frames_dropped": self.frames_dropped,
            "segments_written": len(self.recorder.segments),
            "uptime_s": round(uptime, 1),
        }

    # -- Connections ---------------------------------------------------------

    def _handle_connection(self, sock: socket.socket, addr: tuple) -> None:
        conn = Connection(sock, addr)
        self.registry.add(conn)
        logger.debug("Accepted %r", conn)
        threading.Thread(
            target=self._serve_connection, args=(conn,), name=f"conn-{conn.id}", daemon=True,
        ).start()

    def _serve_connection(self, conn: Connection) -> None:
        handed_off = False
        try:
            try:
                request = read_request(
                    conn.sock, self.config.max_request_bytes, self.config.recv_timeout,
                )
            except ParseFailure as exc:
                logger.debug("Bad request on #%d: %s", conn.id, exc)
                self._reply(conn, build_response(404))
                return
            except OSError as exc:
                logger.debug("Receive error on #%d: %s", conn.id, exc)
                return
            if request is None:
                return

            try:
                result = self.router.dispatch(request)
            except Exception:
                logger.warning(
                    "Routing %s %s on #%d failed", request.method, request.path, conn.id,
                    exc_info=True,
                )
                self._reply(conn, build_response(500))
                return
            logger.debug("#%d %s %s -> %s", conn.id, request.method, request.path,
                         "stream" if result.stream else result.status)
            if result.stream:
                self.registry.mark_streaming(conn.id)
                handed_off = self.hub.subscribe(conn)
                return
            self._reply(conn, result.response)
        finally:
            if not handed_off:
                conn.close()
                self.registry.remove(conn.id)

    def _reply(self, conn: Connection, response: bytes) -> None:
        try:
            conn.send(response, timeout=self.config.write_timeout)
        except WriteFailure as exc:
            logger.debug("Response to #%d not delivered: %s", conn.id, exc)

    def _forget(self, conn: Connection) -> None:
        self.registry.remove(conn.id)

    def _on_hub_active(self, active: bool) -> None:
        if active:
            logger.info("First viewer connected, live encoding on")
        else:
            logger.info("No viewers left, live encoding paused")

    # -- Control events ------------------------------------------------------

    def _on_control_event(self, event: ControlEvent) -> None:
        if event.kind is EventKind.TOGGLE_RECORDING:
            self._toggle_recording()
        elif event.kind is EventKind.TOGGLE_VIDEO:
            self._video_enabled = not self._video_enabled
        elif event.kind is EventKind.TOGGLE_AUDIO:
            self._audio_enabled = not self._audio_enabled
        elif event.kind is EventKind.CHANGE_RESOLUTION:
            self._resolution = event.value

    def _toggle_recording(self) -> None:
        if self.recorder.recording:
            self.recorder.stop()
            return
        if self._stopped:
            logger.info("Ignoring recording start on a stopped server")
            return
        try:
            self.recorder.start()
        except SegmentIOFailure as exc:
            logger.warning("Recording not started: %s", exc)

    def _hls_dir(self) -> Path | None:
        if self.recorder.playlist_path.is_file():
            return self.recorder.output_dir
        return None


# ── Module-level shared instance ────────────────────────────────────────────

_shared_server: CameraServer | None = None
_shared_lock = threading.Lock()


def get_server() -> CameraServer | None:
    """Return the shared CameraServer, or None if not yet created."""
    return _shared_server


def get_or_create_server(config: ServerConfig | None = None) -> CameraServer:
    """Return the shared CameraServer, creating and starting it if necessary.

    An existing server on a different port, or one that is no longer
    listening, is stopped and replaced.
    """
    global _shared_server
    config = config or ServerConfig()
    with _shared_lock:
        if _shared_server is not None:
            if _shared_server.config.port == config.port and _shared_server.is_listening:
                return _shared_server
            _shared_server.stop_server()
            _shared_server = None

        server = CameraServer(config)
        server.start_server()
        _shared_server = server
        return server
