"""Synthetic test-card source and command-line parsing."""

import time

from ipcamstream.__main__ import build_parser
from ipcamstream.events import ControlEvent, EventKind
from ipcamstream.frames import MediaKind
from ipcamstream.source import TestCardSource, make_test_card

from conftest import wait_for


def test_make_test_card():
    card = make_test_card(320, 240, t=1.5, label="HD (720p)")
    assert card.shape == (240, 320, 3)
    assert card.dtype.name == "uint8"


def test_source_pushes_frames_and_follows_events():
    frames = []
    source = TestCardSource(frames.append, width=64, height=48, fps=50.0)
    source.start()
    try:
        assert wait_for(lambda: len(frames) >= 3)
        assert frames[0].data.shape == (48, 64, 3)
        assert all(f.kind is MediaKind.VIDEO for f in frames)

        source.handle_event(ControlEvent.change_resolution("Low (480p)"))
        assert source.size == (640, 480)
        source.handle_event(ControlEvent.change_resolution("Bogus"))
        assert source.size == (640, 480)

        source.handle_event(ControlEvent(EventKind.TOGGLE_AUDIO))
        assert wait_for(lambda: any(f.kind is MediaKind.AUDIO for f in frames))

        source.handle_event(ControlEvent(EventKind.TOGGLE_VIDEO))
        time.sleep(0.1)
        count = sum(f.kind is MediaKind.VIDEO for f in frames)
        time.sleep(0.2)
        assert sum(f.kind is MediaKind.VIDEO for f in frames) == count
    finally:
        source.stop()

    timestamps = [f.timestamp for f in frames if f.kind is MediaKind.VIDEO]
    assert timestamps == sorted(timestamps)


def test_cli_arguments():
    args = build_parser().parse_args(
        ["--port", "9000", "--record", "--segment-duration", "4", "--output-dir", "/tmp/x"]
    )
    assert args.port == 9000
    assert args.record
    assert args.segment_duration == 4.0
    assert args.output_dir == "/tmp/x"
    assert args.host is None
