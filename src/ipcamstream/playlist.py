"""HLS media playlist rendering and atomic publication."""

from __future__ import annotations

import contextlib
import math
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

PLAYLIST_NAME = "playlist.m3u8"

_MEDIA_SEQUENCE_RE = re.compile(r"^#EXT-X-MEDIA-SEQUENCE:(\d+)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class PlaylistEntry:
    index: int
    name: str
    duration: float


def render_playlist(
    entries: Iterable[PlaylistEntry],
    target_duration: float,
    media_sequence: int | None = None,
) -> str:
    """Render a version-3 HLS media playlist.

    ``media_sequence`` defaults to the index of the first entry (or 0 for
    an empty playlist).  ``#EXT-X-TARGETDURATION`` is the ceiling of the
    longest entry, never below ``target_duration``.
    """
    entries = list(entries)
    if media_sequence is None:
        media_sequence = entries[0].index if entries else 0
    longest = max([target_duration] + [e.duration for e in entries])

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{max(1, math.ceil(longest))}",
        f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}",
    ]
    for entry in entries:
        lines.append(f"#EXTINF:{entry.duration:.3f},")
        lines.append(entry.name)
    return "\n".join(lines) + "\n"


def write_playlist(path: str | os.PathLike[str], text: str) -> None:
    """Atomically replace ``path`` with ``text``.

    The content goes to a sibling temp file which is fsynced and then
    renamed over the target, so readers only ever see a complete manifest.
    """
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def parse_media_sequence(text: str) -> int | None:
    match = _MEDIA_SEQUENCE_RE.search(text)
    return int(match.group(1)) if match else None


def parse_segment_names(text: str) -> list[str]:
    """Segment URIs listed in a media playlist, in order."""
    return [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.startswith("#")
    ]
