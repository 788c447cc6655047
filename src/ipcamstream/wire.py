"""HTTP/1.1 request parsing and response framing on raw byte streams.

Only the subset the camera server needs: one request per connection, no
chunked bodies, no keep-alive.  Unknown headers are carried along and
otherwise ignored.
"""

from __future__ import annotations

import json
import socket
from dataclasses import dataclass, field
from urllib.parse import unquote

from .errors import ParseFailure

_HEAD_END = b"\r\n\r\n"

REASONS = {
    200: "OK",
    204: "No Content",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


@dataclass
class Request:
    method: str
    path: str
    query: str = ""
    version: str = "HTTP/1.1"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def json(self):
        """Decode the body as JSON.

        Raises ValueError on bad UTF-8, bad JSON or nesting too deep to
        decode.
        """
        try:
            return json.loads(self.body.decode("utf-8"))
        except RecursionError as exc:
            raise ValueError("JSON body nested too deeply") from exc


def _split_head(data: bytes) -> tuple[bytes, bytes]:
    idx = data.find(_HEAD_END)
    if idx >= 0:
        return data[:idx], data[idx + len(_HEAD_END):]
    # Tolerate bare-LF clients
    idx = data.find(b"\n\n")
    if idx >= 0:
        return data[:idx], data[idx + 2:]
    return data, b""


def parse_request(data: bytes) -> Request:
    """Parse one complete request (head and body) from ``data``."""
    if not data:
        raise ParseFailure("empty request")
    head, body = _split_head(data)
    try:
        text = head.decode("iso-8859-1")
    except UnicodeDecodeError as exc:  # pragma: no cover - latin-1 decodes anything
        raise ParseFailure("undecodable request head") from exc

    lines = text.replace("\r\n", "\n").split("\n")
    parts = lines[0].split()
    if len(parts) == 2:
        method, target = parts
        version = "HTTP/1.0"
    elif len(parts) == 3:
        method, target, version = parts
    else:
        raise ParseFailure(f"malformed request line: {lines[0][:80]!r}")
    if not method.isalpha() or not target:
        raise ParseFailure(f"malformed request line: {lines[0][:80]!r}")

    path, _, query = target.partition("?")
    path, _, _fragment = path.partition("#")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line or ":" not in line:
            continue
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()

    return Request(
        method=method.upper(),
        path=unquote(path) or "/",
        query=query,
        version=version,
        headers=headers,
        body=body,
    )


def _content_length(head: bytes) -> int:
    for line in head.split(b"\n")[1:]:
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            try:
                return max(0, int(value.strip()))
            except ValueError:
                return 0
    return 0


def read_request(sock: socket.socket, max_bytes: int = 8192, timeout: float | None = 5.0) -> Request | None:
    """Read one request from ``sock``.

    Returns None if the peer closed without sending anything.  Raises
    :class:`ParseFailure` if the request is oversized or malformed, and
    lets socket errors (timeouts, resets) propagate to the caller.
    """
    sock.settimeout(timeout)
    data = b""
    while _HEAD_END not in data and b"\n\n" not in data:
        if len(data) > max_bytes:
            raise ParseFailure("request head too large")
        chunk = sock.recv(4096)
        if not chunk:
            if not data:
                return None
            break
        data += chunk

    head, body = _split_head(data)
    needed = _content_length(head)
    if len(head) + needed > max_bytes:
        raise ParseFailure("request body too large")
    while len(body) < needed:
        chunk = sock.recv(min(4096, needed - len(body)))
        if not chunk:
            break
        body += chunk
    if needed:
        body = body[:needed]
    return parse_request(head + _HEAD_END + body)


def build_response(
    status: int,
    body: bytes | str = b"",
    content_type: str | None = None,
    headers: dict[str, str] | None = None,
) -> bytes:
    """Frame a complete, non-streaming HTTP/1.1 response."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    lines = [f"HTTP/1.1 {status} {REASONS.get(status, 'Unknown')}"]
    if content_type:
        lines.append(f"Content-Type: {content_type}")
    lines.append(f"Content-Length: {len(body)}")
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1") + body


def json_response(payload: dict, status: int = 200) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    return build_response(status, body, "application/json", CORS_HEADERS)


def stream_preamble(boundary: str) -> bytes:
    """Status line and headers that open a multipart MJPEG response."""
    return (
        "HTTP/1.1 200 OK\r\n"
        f"Content-Type: multipart/x-mixed-replace; boundary={boundary}\r\n"
        "Cache-Control: no-cache, no-store, must-revalidate\r\n"
        "Pragma: no-cache\r\n"
        "Expires: 0\r\n"
        "Access-Control-Allow-Origin: *\r\n"
        "Connection: close\r\n"
        "\r\n"
    ).encode("ascii")


def multipart_part(boundary: bytes, jpeg: bytes) -> bytes:
    """One multipart body part carrying one JPEG frame."""
    return (
        b"--" + boundary + b"\r\n"
        b"Content-Type: image/jpeg\r\n"
        b"Content-Length: " + str(len(jpeg)).encode() + b"\r\n"
        b"\r\n" + jpeg + b"\r\n"
    )
