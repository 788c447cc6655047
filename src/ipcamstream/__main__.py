"""Run the camera server standalone with a synthetic test-card source.

Usage::

    python -m ipcamstream
    python -m ipcamstream --port 8080 --fps 15 --record
    ipcamstream --output-dir /tmp/hls --segment-duration 4
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from .config import ServerConfig
from .errors import BindFailure
from .events import ControlEvent, EventKind
from .server import CameraServer
from .source import TestCardSource

logger = logging.getLogger("ipcamstream")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipcamstream",
        description="MJPEG live stream server with JSON controls and HLS recording",
    )
    parser.add_argument("--host", default=None, help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="TCP port (default: 8080)")
    parser.add_argument("--fps", type=float, default=15.0, help="Test card frame rate (default: 15)")
    parser.add_argument("--width", type=int, default=1280, help="Test card width (default: 1280)")
    parser.add_argument("--height", type=int, default=720, help="Test card height (default: 720)")
    parser.add_argument("--record", action="store_true", help="Start recording immediately")
    parser.add_argument("--output-dir", default=None, help="Recording directory")
    parser.add_argument(
        "--segment-duration", type=float, default=None,
        help="Target segment length in seconds (default: 2)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    overrides: dict = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    recording: dict = {"fps": args.fps}
    if args.output_dir is not None:
        recording["output_dir"] = args.output_dir
    if args.segment_duration is not None:
        recording["segment_duration"] = args.segment_duration
    config = ServerConfig.from_env(recording=recording, **overrides)

    server = CameraServer(config)
    source = TestCardSource(server.submit_frame, args.width, args.height, args.fps)
    server.add_control_listener(source.handle_event)

    try:
        server.start_server()
    except BindFailure as exc:
        logger.error("%s", exc)
        return 1

    logger.info("Open http://%s:%d/ in a browser", "localhost", server.port)
    source.start()
    if args.record:
        server.events.emit(ControlEvent(EventKind.TOGGLE_RECORDING))

    done = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: done.set())
    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        source.stop()
        server.stop_server()
    return 0


if __name__ == "__main__":
    sys.exit(main())
