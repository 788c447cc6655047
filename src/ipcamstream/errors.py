"""Exception types raised inside the streaming core.

Only :class:`BindFailure` ever reaches the caller of
``CameraServer.start_server()``.  Everything else is caught where it
happens: the affected connection is dropped, the frame is skipped, or the
segment rotation is retried on the next frame.
"""

from __future__ import annotations


class IPCamError(Exception):
    """Base class for all streaming-core errors."""


class BindFailure(IPCamError):
    """The listener could not bind its TCP port (e.g. address in use)."""

    def __init__(self, host: str, port: int, reason: BaseException | str) -> None:
        super().__init__(f"cannot bind {host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class ParseFailure(IPCamError):
    """A request could not be read or parsed."""


class WriteFailure(IPCamError):
    """A write to a peer failed or timed out (peer gone or too slow)."""


class EncodeFailure(IPCamError):
    """A frame could not be encoded to JPEG or written to a container."""


class SegmentIOFailure(IPCamError):
    """Disk I/O for a recording segment or the playlist failed."""

    def __init__(self, message: str, errno: int | None = None) -> None:
        super().__init__(message)
        self.errno = errno
