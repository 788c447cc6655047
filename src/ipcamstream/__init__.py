"""Live MJPEG camera server with a JSON control API and HLS segment recording."""

from .config import RecordingConfig, ServerConfig
from .errors import (
    BindFailure,
    EncodeFailure,
    IPCamError,
    ParseFailure,
    SegmentIOFailure,
    WriteFailure,
)
from .events import ControlEvent, EventKind
from .frames import Frame, MediaKind
from .server import CameraServer, get_or_create_server, get_server

__version__ = "0.1.0"

__all__ = [
    "BindFailure",
    "CameraServer",
    "ControlEvent",
    "EncodeFailure",
    "EventKind",
    "Frame",
    "IPCamError",
    "MediaKind",
    "ParseFailure",
    "RecordingConfig",
    "SegmentIOFailure",
    "ServerConfig",
    "WriteFailure",
    "get_or_create_server",
    "get_server",
]
