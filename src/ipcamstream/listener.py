"""TCP listener with a background accept loop."""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum, auto
from typing import Callable

from .errors import BindFailure

logger = logging.getLogger(__name__)

ConnectionHandler = Callable[[socket.socket, tuple], None]


class ListenerState(Enum):
    STOPPED = auto()     # never started
    READY = auto()       # accepting connections
    FAILED = auto()      # last start() could not bind
    CANCELLED = auto()   # stopped after running


class Listener:
    """Binds one TCP port and hands every accepted socket to ``handler``.

    ``stop()`` returns only after the accept thread has exited and the
    listening socket is closed, so ``start()`` right after ``stop()``
    rebinds the same port without racing the previous release.
    """

    def __init__(
        self,
        host: str,
        port: int,
        handler: ConnectionHandler,
        accept_timeout: float = 0.25,
        backlog: int = 64,
    ) -> None:
        self._host = host
        self._requested_port = port
        self._handler = handler
        self._accept_timeout = accept_timeout
        self._backlog = backlog
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lifecycle = threading.Lock()
        self._state = ListenerState.STOPPED
        self._port = port

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state is ListenerState.READY

    @property
    def port(self) -> int:
        """Bound port (the real one when constructed with port 0)."""
        return self._port

    def start(self) -> None:
        """Bind, listen and start accepting.  Raises BindFailure."""
        with self._lifecycle:
            if self._state is ListenerState.READY:
                return
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._host, self._requested_port))
                sock.listen(self._backlog)
                sock.settimeout(self._accept_timeout)
            except OSError as exc:
                sock.close()
                self._state = ListenerState.FAILED
                logger.error("Listener failed on %s:%d: %s", self._host, self._requested_port, exc)
                raise BindFailure(self._host, self._requested_port, exc) from exc

            self._sock = sock
            self._port = sock.getsockname()[1]
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._accept_loop, args=(sock,), name=f"accept-{self._port}", daemon=True,
            )
            self._state = ListenerState.READY
            self._thread.start()
            logger.info("Listening on %s:%d", self._host, self._port)

    def stop(self) -> None:
        """Stop accepting and release the port.  Idempotent."""
        with self._lifecycle:
            sock, self._sock = self._sock, None
            thread, self._thread = self._thread, None
            self._stop.set()
            if thread is not None and thread is not threading.current_thread():
                thread.join()
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    logger.debug("Error closing listening socket", exc_info=True)
            if self._state is ListenerState.READY:
                self._state = ListenerState.CANCELLED
                logger.info("Listener on port %d stopped", self._port)

    def _accept_loop(self, sock: socket.socket) -> None:
        while not self._stop.is_set():
            try:
                client, addr = sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stop.is_set():
                    logger.warning("accept() failed: %s", exc)
                    self._stop.wait(self._accept_timeout)
                continue
            if self._stop.is_set():
                client.close()
                break
            # Accepted sockets must not inherit the listener's poll timeout
            client.settimeout(None)
            try:
                self._handler(client, addr)
            except Exception:
                logger.warning("Connection handler failed for %s", addr, exc_info=True)
                client.close()
