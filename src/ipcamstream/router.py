"""Request routing for the camera HTTP server.

Endpoints
---------
``GET  /``                     Viewer page with an embedded ``<img>`` MJPEG player.
``GET  /stream``               MJPEG multipart stream (hand-off to the stream hub).
``GET  /health``, ``/status``  Server status (JSON).
``POST /settings/resolution``  ``{"resolution": "<label>"}`` -> change-resolution event.
``POST /settings/video``       Toggle video.
``POST /settings/audio``       Toggle audio.
``POST /settings/recording``   Toggle segmented recording.
``GET  /hls/playlist.m3u8``    Current recording playlist.
``GET  /hls/segment<N>.<ext>`` A recorded segment.

Anything else is a 404 with an empty body.  The router itself never
touches sockets: :meth:`Router.dispatch` maps a parsed request to a
:class:`RouteResult` and the server performs the I/O.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .events import ControlEvent, EventDispatcher, EventKind, RESOLUTION_LABELS
from .playlist import PLAYLIST_NAME
from .wire import CORS_HEADERS, Request, build_response, json_response

logger = logging.getLogger(__name__)

_OK = {"status": "ok"}

_CONTENT_TYPES = {
    "m3u8": "application/vnd.apple.mpegurl",
    "mp4": "video/mp4",
    "m4s": "video/iso.segment",
    "ts": "video/mp2t",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
}

_TOGGLES = {
    "/settings/video": EventKind.TOGGLE_VIDEO,
    "/settings/audio": EventKind.TOGGLE_AUDIO,
    "/settings/recording": EventKind.TOGGLE_RECORDING,
}


# ── Viewer page ─────────────────────────────────────────────────────────────

_VIEWER_HTML = """\
<!DOCTYPE html>
<html>
<head>
<title>iP-Cam</title>
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<style>
  body {
    margin: 0; padding: 20px; background: #555; color: #fff;
    font-family: Arial, sans-serif; display: flex; flex-direction: column;
    align-items: center; justify-content: center; min-height: 100vh;
  }
  .video-container { position: relative; width: 90%; max-width: 90vw; }
  #stream {
    width: 100%; height: auto; max-height: 80vh; object-fit: contain;
    border: 2px solid #333; border-radius: 8px; cursor: pointer;
  }
  #stream.fullscreen {
    position: fixed; top: 0; left: 0; width: 100vw; height: 100vh;
    max-height: none; z-index: 9999; border: none; border-radius: 0;
  }
  .controls { margin-top: 16px; display: flex; gap: 8px; flex-wrap: wrap; }
  button, select {
    background: rgba(0,0,0,0.8); color: #fff; border: none;
    padding: 8px 12px; border-radius: 6px; cursor: pointer;
  }
  #status { margin-top: 10px; font-size: 12px; color: #ddd; }
</style>
</head>
<body>
<h1>iP-Cam</h1>
<div class="video-container">
  <img id="stream" src="/stream" onclick="toggleFullscreen()">
</div>
<div class="controls">
  <button onclick="post('/settings/video')">Toggle video</button>
  <button onclick="post('/settings/audio')">Toggle audio</button>
  <button onclick="post('/settings/recording')">Toggle recording</button>
  <select id="resolution" onchange="setResolution(this.value)">
    __RESOLUTION_OPTIONS__
  </select>
</div>
<div id="status"></div>
<script>
const img = document.getElementById('stream');
const statusEl = document.getElementById('status');

function toggleFullscreen() {
  img.classList.toggle('fullscreen');
}
document.addEventListener('keydown', (e) => {
  if (e.key === 'Escape') img.classList.remove('fullscreen');
});

// Reconnect when the stream drops (server restart, eviction)
img.onerror = () => {
  setTimeout(() => { img.src = '/stream?t=' + Date.now(); }, 1000);
};

async function post(path, body) {
  await fetch(path, {
    method: 'POST',
    headers: {'Content-Type': 'application/json'},
    body: body ? JSON.stringify(body) : '',
  });
  refresh();
}

function setResolution(label) {
  post('/settings/resolution', {resolution: label});
}

async function refresh() {
  try {
    const r = await fetch('/status');
    const s = await r.json();
    statusEl.textContent =
      `viewers: ${s.viewers} | recording: ${s.recording ? 'on' : 'off'}`;
  } catch (e) {
    statusEl.textContent = 'offline';
  }
}
refresh();
setInterval(refresh, 5000);
</script>
</body>
</html>
"""


def _viewer_page() -> str:
    options = "\n    ".join(
        f'<option value="{label}">{label}</option>' for label in RESOLUTION_LABELS
    )
    return _VIEWER_HTML.replace("__RESOLUTION_OPTIONS__", options)


# ── Routing ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RouteResult:
    """Outcome of routing one request.

    Exactly one of ``response`` (a complete HTTP response to write and then
    close) or ``stream`` (hand the connection to the stream hub) is set.
    """

    response: bytes | None = None
    stream: bool = False
    status: int = 200

    @classmethod
    def reply(cls, status: int, response: bytes) -> RouteResult:
        return cls(response=response, status=status)


NOT_FOUND = RouteResult.reply(404, build_response(404))


class Router:
    """Maps requests to responses, stream hand-offs and control events."""

    def __init__(
        self,
        events: EventDispatcher,
        status_provider: Callable[[], dict] | None = None,
        hls_dir_provider: Callable[[], Path | None] | None = None,
        segment_extension: str = "mp4",
    ) -> None:
        self._events = events
        self._status_provider = status_provider or (lambda: {})
        self._hls_dir_provider = hls_dir_provider or (lambda: None)
        self._segment_re = re.compile(
            rf"^segment\d+\.{re.escape(segment_extension)}$"
        )
        self._page = _viewer_page().encode("utf-8")

    def dispatch(self, request: Request) -> RouteResult:
        method, path = request.method, request.path

        if method == "GET":
            if path == "/":
                return RouteResult.reply(
                    200, build_response(200, self._page, "text/html; charset=utf-8")
                )
            if path == "/stream":
                return RouteResult(stream=True)
            if path in ("/health", "/status"):
                return self._status()
            if path.startswith("/hls/"):
                return self._hls_file(path[len("/hls/"):])
        elif method == "POST":
            if path == "/settings/resolution":
                return self._change_resolution(request)
            if path in _TOGGLES:
                self._events.emit(ControlEvent(_TOGGLES[path]))
                return RouteResult.reply(200, json_response(_OK))
        elif method == "OPTIONS":
            return RouteResult.reply(
                204,
                build_response(204, headers={
                    **CORS_HEADERS,
                    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                    "Access-Control-Allow-Headers": "Content-Type",
                }),
            )
        return NOT_FOUND

    def _status(self) -> RouteResult:
        try:
            payload = {"status": "ok", **self._status_provider()}
        except Exception:
            logger.warning("Status provider failed", exc_info=True)
            payload = {"status": "error"}
        return RouteResult.reply(200, json_response(payload))

    def _change_resolution(self, request: Request) -> RouteResult:
        try:
            data = request.json()
        except ValueError:
            logger.debug("Ignoring malformed resolution body: %r", request.body[:80])
            data = None
        label = data.get("resolution") if isinstance(data, dict) else None
        if isinstance(label, str) and label:
            if label not in RESOLUTION_LABELS:
                logger.info("Forwarding unrecognized resolution label %r", label)
            self._events.emit(ControlEvent.change_resolution(label))
        return RouteResult.reply(200, json_response(_OK))

    def _hls_file(self, name: str) -> RouteResult:
        directory = self._hls_dir_provider()
        if directory is None:
            return NOT_FOUND
        if name == PLAYLIST_NAME:
            content_type = _CONTENT_TYPES["m3u8"]
        elif self._segment_re.match(name):
            ext = name.rsplit(".", 1)[1]
            content_type = _CONTENT_TYPES.get(ext, "application/octet-stream")
        else:
            return NOT_FOUND
        try:
            body = (Path(directory) / name).read_bytes()
        except OSError:
            return NOT_FOUND
        return RouteResult.reply(
            200,
            build_response(200, body, content_type, {
                **CORS_HEADERS,
                "Cache-Control": "no-cache",
            }),
        )
