"""Shared fixtures: loopback servers, raw HTTP helpers and fake segment sinks."""

from __future__ import annotations

import errno
import socket
import time
from pathlib import Path

import pytest

from ipcamstream.config import RecordingConfig, ServerConfig
from ipcamstream.errors import EncodeFailure, SegmentIOFailure
from ipcamstream.frames import Frame
from ipcamstream.recording import SegmentSink
from ipcamstream.server import CameraServer


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def http_request(port: int, raw: bytes, timeout: float = 5.0) -> tuple[int, dict[str, str], bytes]:
    """Send ``raw`` and read until the server closes the connection."""
    with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
        sock.sendall(raw)
        data = b""
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            data += chunk
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    status = int(lines[0].split()[1])
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return status, headers, body


def get(port: int, path: str) -> tuple[int, dict[str, str], bytes]:
    return http_request(port, f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())


def post(port: int, path: str, body: bytes = b"") -> tuple[int, dict[str, str], bytes]:
    head = (
        f"POST {path} HTTP/1.1\r\nHost: localhost\r\n"
        f"Content-Type: application/json\r\nContent-Length: {len(body)}\r\n\r\n"
    )
    return http_request(port, head.encode() + body)


def open_stream(port: int, rcvbuf: int | None = None, timeout: float = 5.0) -> tuple[socket.socket, bytes]:
    """Connect to /stream and return the socket plus the response head."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if rcvbuf is not None:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, rcvbuf)
    sock.settimeout(timeout)
    sock.connect(("127.0.0.1", port))
    sock.sendall(b"GET /stream HTTP/1.1\r\nHost: localhost\r\n\r\n")
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            raise ConnectionError("stream closed before preamble")
        data += chunk
    head, _, rest = data.partition(b"\r\n\r\n")
    assert rest == b""
    return sock, head


# ── Fake segment containers ─────────────────────────────────────────────────


class FakeSink(SegmentSink):
    """Writes a fixed number of bytes per video frame."""

    bytes_per_frame = 600
    instances: list["FakeSink"] = []

    def __init__(self, path: Path, config: RecordingConfig) -> None:
        super().__init__(path, config)
        self.video_frames: list[Frame] = []
        self.audio_frames: list[Frame] = []
        self.closed = False
        self._handle = open(path, "wb")
        FakeSink.instances.append(self)

    def write_video(self, frame: Frame) -> None:
        if frame.data is None:
            raise EncodeFailure("no data")
        self._handle.write(b"\x00" * self.bytes_per_frame)
        self.video_frames.append(frame)

    def write_audio(self, frame: Frame) -> None:
        self.audio_frames.append(frame)

    def close(self) -> None:
        self._handle.close()
        self.closed = True


class AudioFakeSink(FakeSink):
    supports_audio = True


class TinySink(FakeSink):
    bytes_per_frame = 10


class FailingOpenSink(FakeSink):
    """Fails to open the first ``fail_opens`` times."""

    fail_opens = 1
    attempts = 0

    def __init__(self, path: Path, config: RecordingConfig) -> None:
        FailingOpenSink.attempts += 1
        if FailingOpenSink.attempts <= FailingOpenSink.fail_opens:
            raise SegmentIOFailure("simulated open failure", errno.EIO)
        super().__init__(path, config)


class DiskFullSink(FakeSink):
    """Opens fine until ``full_after`` segments exist, then reports ENOSPC."""

    full_after = 2
    opened = 0

    def __init__(self, path: Path, config: RecordingConfig) -> None:
        if DiskFullSink.opened >= DiskFullSink.full_after:
            raise SegmentIOFailure("No space left on device", errno.ENOSPC)
        DiskFullSink.opened += 1
        super().__init__(path, config)


@pytest.fixture(autouse=True)
def _reset_fake_sinks():
    FakeSink.instances = []
    FailingOpenSink.attempts = 0
    DiskFullSink.opened = 0
    yield
    for sink in FakeSink.instances:
        if not sink.closed:
            sink.close()


# ── Servers ─────────────────────────────────────────────────────────────────


@pytest.fixture
def recording_config(tmp_path) -> RecordingConfig:
    return RecordingConfig(output_dir=tmp_path / "hls", segment_duration=2.0, playlist_window=3)


@pytest.fixture
def config(recording_config) -> ServerConfig:
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        write_timeout=0.5,
        recv_timeout=2.0,
        accept_timeout=0.05,
        recording=recording_config,
    )


@pytest.fixture
def server(config):
    srv = CameraServer(config, sink_factory=FakeSink)
    srv.start_server()
    yield srv
    srv.stop_server()
