"""Fan-out semantics of the stream hub."""

import socket
import threading
import time

import pytest

from ipcamstream.hub import StreamHub
from ipcamstream.registry import Connection
from ipcamstream.wire import multipart_part, stream_preamble

BOUNDARY = "testframe"


class Viewer:
    """A socketpair-backed viewer whose far end is read by the test."""

    def __init__(self, sndbuf: int | None = None) -> None:
        self.local, self.remote = socket.socketpair()
        if sndbuf is not None:
            self.local.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, sndbuf)
        self.remote.settimeout(5.0)
        self.conn = Connection(self.local, "test")

    def read_exactly(self, n: int) -> bytes:
        data = b""
        while len(data) < n:
            chunk = self.remote.recv(min(65536, n - len(data)))
            if not chunk:
                break
            data += chunk
        return data

    def pending(self) -> bytes:
        self.remote.settimeout(0.05)
        data = b""
        try:
            while True:
                chunk = self.remote.recv(65536)
                if not chunk:
                    break
                data += chunk
        except socket.timeout:
            pass
        finally:
            self.remote.settimeout(5.0)
        return data

    def close(self) -> None:
        self.conn.close()
        self.remote.close()


@pytest.fixture
def viewers():
    made: list[Viewer] = []

    def make(**kwargs) -> Viewer:
        v = Viewer(**kwargs)
        made.append(v)
        return v

    yield make
    for v in made:
        v.close()


PREAMBLE = stream_preamble(BOUNDARY)


def test_subscribe_sends_preamble(viewers):
    hub = StreamHub(BOUNDARY)
    v = viewers()
    assert hub.subscribe(v.conn)
    assert v.read_exactly(len(PREAMBLE)) == PREAMBLE
    assert v.conn in hub
    assert len(hub) == 1


def test_publish_reaches_every_viewer(viewers):
    hub = StreamHub(BOUNDARY)
    vs = [viewers() for _ in range(3)]
    for v in vs:
        hub.subscribe(v.conn)
        v.read_exactly(len(PREAMBLE))
    assert hub.publish(b"JPEG1") == 3
    part = multipart_part(BOUNDARY.encode(), b"JPEG1")
    for v in vs:
        assert v.read_exactly(len(part)) == part
    assert hub.frames_published == 1


def test_publish_without_viewers():
    hub = StreamHub(BOUNDARY)
    assert hub.publish(b"JPEG") == 0
    assert hub.frames_published == 0


def test_unsubscribed_viewer_gets_nothing_more(viewers):
    hub = StreamHub(BOUNDARY)
    a, b = viewers(), viewers()
    hub.subscribe(a.conn)
    hub.subscribe(b.conn)
    a.read_exactly(len(PREAMBLE))
    b.read_exactly(len(PREAMBLE))
    assert hub.unsubscribe(a.conn)
    assert not hub.unsubscribe(a.conn)
    assert hub.publish(b"JPEG") == 1
    assert a.pending() == b""
    assert b.pending() == multipart_part(BOUNDARY.encode(), b"JPEG")


def test_failed_write_evicts_in_same_pass(viewers):
    evicted = []
    hub = StreamHub(BOUNDARY, write_timeout=0.5, on_evict=evicted.append)
    good, gone = viewers(), viewers()
    hub.subscribe(good.conn)
    hub.subscribe(gone.conn)
    gone.remote.close()
    assert hub.publish(b"JPEG") == 1
    assert gone.conn not in hub
    assert gone.conn.closed
    assert evicted == [gone.conn]
    assert hub.evicted == 1
    assert hub.publish(b"JPEG") == 1
    assert evicted == [gone.conn]


def test_subscribe_to_dead_peer_fails(viewers):
    evicted = []
    hub = StreamHub(BOUNDARY, on_evict=evicted.append)
    v = viewers()
    v.remote.close()
    assert not hub.subscribe(v.conn)
    assert len(hub) == 0
    assert evicted == [v.conn]


def test_activity_transitions(viewers):
    changes = []
    hub = StreamHub(BOUNDARY, write_timeout=0.5, on_active_change=changes.append)
    a, b = viewers(), viewers()
    assert not hub.active
    hub.subscribe(a.conn)
    hub.subscribe(b.conn)
    assert hub.active
    hub.unsubscribe(a.conn)
    b.remote.close()
    hub.publish(b"JPEG")
    assert not hub.active
    assert changes == [True, False]


def test_shutdown(viewers):
    hub = StreamHub(BOUNDARY)
    assert hub.shutdown() == 0
    vs = [viewers() for _ in range(2)]
    for v in vs:
        hub.subscribe(v.conn)
    assert hub.shutdown() == 2
    assert len(hub) == 0
    assert all(v.conn.closed for v in vs)
    assert hub.shutdown() == 0


def test_slow_viewer_is_evicted_and_does_not_stall_others(viewers):
    """A viewer that never reads is dropped; the reading one gets every frame."""
    write_timeout = 0.2
    hub = StreamHub(BOUNDARY, write_timeout=write_timeout)
    fast = viewers()
    slow = viewers(sndbuf=4096)
    hub.subscribe(fast.conn)
    hub.subscribe(slow.conn)

    frame = b"\xff\xd8" + b"\x55" * (512 * 1024) + b"\xff\xd9"
    part = multipart_part(BOUNDARY.encode(), frame)
    n_frames = 10
    got = {}

    def reader():
        got["data"] = fast.read_exactly(len(PREAMBLE) + n_frames * len(part))

    t = threading.Thread(target=reader)
    t.start()
    start = time.monotonic()
    for _ in range(n_frames):
        hub.publish(frame)
    elapsed = time.monotonic() - start
    t.join(timeout=10)

    assert slow.conn not in hub
    assert slow.conn.closed
    assert fast.conn in hub
    assert got["data"] == PREAMBLE + part * n_frames
    # One stalled write, not one per frame
    assert elapsed < write_timeout * 3 + 2.0


def test_concurrent_subscribe_publish_unsubscribe(viewers):
    """Frames go to viewers subscribed before the publish and never after removal."""
    hub = StreamHub(BOUNDARY, write_timeout=1.0)
    pool = [viewers() for _ in range(12)]
    stop = threading.Event()
    drained: dict[int, bytes] = {}

    def drain(v: Viewer):
        chunks = []
        while True:
            try:
                chunk = v.remote.recv(65536)
            except OSError:
                break
            if not chunk:
                break
            chunks.append(chunk)
        drained[v.conn.id] = b"".join(chunks)

    readers = [threading.Thread(target=drain, args=(v,)) for v in pool]
    for r in readers:
        r.start()

    def churn():
        while not stop.is_set():
            for v in pool[6:]:
                if v.conn in hub:
                    hub.unsubscribe(v.conn)
                else:
                    hub.subscribe(v.conn)

    for v in pool[:6]:
        hub.subscribe(v.conn)
    churner = threading.Thread(target=churn)
    churner.start()
    for i in range(200):
        assert hub.publish(b"F%03d" % i) >= 6
    stop.set()
    churner.join()

    for v in pool[6:]:
        hub.unsubscribe(v.conn)
    hub.publish(b"LAST")
    hub.shutdown()
    for v in pool[6:]:
        v.conn.close()
    for r in readers:
        r.join(timeout=5)

    steady = multipart_part(BOUNDARY.encode(), b"F000")
    for v in pool[:6]:
        data = drained[v.conn.id]
        assert data.startswith(PREAMBLE + steady)
        assert data.count(b"--" + BOUNDARY.encode() + b"\r\n") == 201
    for v in pool[6:]:
        assert b"LAST" not in drained[v.conn.id]
