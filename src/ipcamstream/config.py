"""Server and recording configuration.

Both models are plain pydantic models so that values coming from the
environment or the command line are validated in one place.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_OUTPUT_DIR = Path.home() / ".ipcamstream" / "hls"


class RecordingConfig(BaseModel):
    """Segmented (HLS-style) recording settings."""

    output_dir: Path = Field(
        default=DEFAULT_OUTPUT_DIR,
        description="Directory holding playlist.m3u8 and the segment files. "
        "Wiped every time a recording session starts.",
    )
    segment_duration: float = Field(
        default=2.0,
        gt=0.0,
        le=60.0,
        description="Target segment length in seconds of frame timestamps.",
    )
    playlist_window: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Number of most recent segments advertised in the playlist.",
    )
    min_segment_bytes: int = Field(
        default=1000,
        ge=0,
        description="Segments at or below this size are left out of the playlist.",
    )
    fps: float = Field(
        default=30.0,
        gt=0.0,
        le=240.0,
        description="Nominal frame rate written into each container header.",
    )
    fourcc: str = Field(
        default="mp4v",
        min_length=4,
        max_length=4,
        description="OpenCV FourCC code of the segment video codec.",
    )
    extension: str = Field(
        default="mp4",
        pattern=r"^[A-Za-z0-9]+$",
        description="Segment file extension (without the dot).",
    )
    min_free_bytes: int = Field(
        default=16 * 1024 * 1024,
        ge=0,
        description="Recording stops instead of opening a segment when free disk space drops below this.",
    )
    record_audio: bool = Field(
        default=False,
        description="Forward audio frames to segment containers that can mux them.",
    )


class ServerConfig(BaseModel):
    """HTTP listener, live stream and recording settings."""

    host: str = Field(default="0.0.0.0", description="Interface to bind.")
    port: int = Field(default=8080, ge=0, le=65535, description="TCP port (0 = ephemeral).")
    boundary: str = Field(
        default="ipcamframe",
        pattern=r"^[A-Za-z0-9'()+_,.=-]{1,70}$",
        description="Multipart boundary token of the MJPEG stream.",
    )
    jpeg_quality: int = Field(default=60, ge=1, le=100, description="JPEG quality for live frames.")
    write_timeout: float = Field(
        default=1.0,
        gt=0.0,
        description="Per-write deadline (s) for viewer sockets; slower viewers are evicted.",
    )
    recv_timeout: float = Field(
        default=5.0,
        gt=0.0,
        description="How long a connection may take to send its request.",
    )
    max_request_bytes: int = Field(
        default=8192,
        ge=256,
        description="Upper bound on request head plus body size.",
    )
    accept_timeout: float = Field(
        default=0.25,
        gt=0.0,
        le=5.0,
        description="Accept-loop poll interval; bounds how long stop() waits for the loop.",
    )
    recording: RecordingConfig = Field(default_factory=RecordingConfig)

    @classmethod
    def from_env(cls, prefix: str = "IPCAM_", **overrides) -> ServerConfig:
        """Build a config from ``<prefix>*`` environment variables.

        Explicit keyword ``overrides`` win over the environment.
        """
        env = os.environ
        server: dict = {}
        recording: dict = {}

        for key in ("host", "port", "boundary", "jpeg_quality", "write_timeout", "recv_timeout"):
            value = env.get(prefix + key.upper())
            if value is not None:
                server[key] = value

        if prefix + "OUTPUT_DIR" in env:
            recording["output_dir"] = env[prefix + "OUTPUT_DIR"]
        if prefix + "SEGMENT_DURATION" in env:
            recording["segment_duration"] = env[prefix + "SEGMENT_DURATION"]
        if prefix + "RECORD_AUDIO" in env:
            flag = env[prefix + "RECORD_AUDIO"].strip().lower()
            recording["record_audio"] = flag in ("1", "true", "yes", "on")

        recording_override = overrides.pop("recording", None)
        if isinstance(recording_override, RecordingConfig):
            recording = {**recording, **recording_override.model_dump(exclude_unset=True)}
        elif recording_override:
            recording.update(recording_override)

        server.update(overrides)
        return cls.model_validate({**server, "recording": recording})
