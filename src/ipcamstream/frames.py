"""Frames pushed by the external frame source, plus JPEG encode/decode."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Union

import cv2
import numpy as np

from .errors import EncodeFailure

FrameData = Union[np.ndarray, bytes]


class MediaKind(Enum):
    VIDEO = auto()
    AUDIO = auto()


@dataclass(frozen=True)
class Frame:
    """One timestamped sample from the frame source.

    Video ``data`` is either a BGR uint8 (H, W, 3) array or an already
    encoded JPEG.  Audio ``data`` is opaque to the core.
    ``timestamp`` is the presentation time in seconds.
    """

    data: FrameData
    timestamp: float
    kind: MediaKind = MediaKind.VIDEO

    @property
    def is_video(self) -> bool:
        return self.kind is MediaKind.VIDEO

    @property
    def is_encoded(self) -> bool:
        return isinstance(self.data, (bytes, bytearray, memoryview))


def encode_jpeg(image: FrameData, quality: int = 60) -> bytes:
    """Encode a BGR uint8 image as JPEG.

    Bytes are assumed to already be JPEG and are returned unchanged.
    Raises :class:`EncodeFailure` if OpenCV rejects the image.
    """
    if isinstance(image, (bytes, bytearray, memoryview)):
        return bytes(image)
    if not isinstance(image, np.ndarray) or image.ndim not in (2, 3) or image.size == 0:
        raise EncodeFailure(f"not an encodable image: {type(image).__name__}")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    try:
        ok, jpeg_buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    except cv2.error as exc:
        raise EncodeFailure(str(exc)) from exc
    if not ok:
        raise EncodeFailure("cv2.imencode returned no data")
    return jpeg_buf.tobytes()


def decode_jpeg(data: bytes) -> np.ndarray:
    """Decode JPEG bytes to a BGR uint8 array."""
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if image is None:
        raise EncodeFailure("cannot decode JPEG payload")
    return image


def to_bgr(image: FrameData) -> np.ndarray:
    """Return ``image`` as a 3-channel BGR uint8 array."""
    if isinstance(image, (bytes, bytearray, memoryview)):
        return decode_jpeg(bytes(image))
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise EncodeFailure(f"not an image: {type(image).__name__}")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    raise EncodeFailure(f"unsupported image shape {image.shape}")
