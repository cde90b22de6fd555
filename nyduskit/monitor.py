"""Watching daemon API sockets and reporting when a daemon goes away."""

from __future__ import annotations

import logging
import selectors
import socket
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from .database import AlreadyExistsError, NotFoundError
from .retry import retry_call

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeathEvent:
    """A watched daemon closed its connection."""

    daemon_id: str
    path: str


class Notifier(Protocol):
    def put(self, item: DeathEvent) -> None: ...


@dataclass(eq=False)
class _Target:
    sock: socket.socket
    notifier: Notifier
    daemon_id: str
    path: str
    watched: bool = True


class LivenessMonitor:
    """Holds a connection to each daemon socket and notifies on hang-up."""

    connect_attempts = 20
    connect_delay = 0.1
    poll_interval = 0.1

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, _Target] = {}
        self._selector = selectors.DefaultSelector()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, daemon_id: str, path: str, notifier: Notifier) -> None:
        """Connect to the socket at path and report its death to notifier.

        Raises AlreadyExistsError if the daemon is already watched on the
        same path, and OSError if the socket cannot be connected.
        """
        with self._lock:
            existing = self._subscribers.get(daemon_id)
            if existing is not None and existing.path == path:
                log.warning("Daemon %s is already subscribed!", daemon_id)
                raise AlreadyExistsError(f"daemon {daemon_id} is already subscribed")

            def connect() -> socket.socket:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.connect(path)
                except OSError as err:
                    sock.close()
                    log.error("Fails to connect to %s, %s", path, err)
                    raise
                return sock

            sock = retry_call(
                connect,
                attempts=self.connect_attempts,
                delay=self.connect_delay,
                last_error_only=True,
            )
            assert sock is not None
            sock.setblocking(False)
            target = _Target(sock=sock, notifier=notifier, daemon_id=daemon_id, path=path)
            try:
                self._selector.register(sock, selectors.EVENT_READ, target)
            except (OSError, ValueError):
                sock.close()
                log.error("Failed to watch daemon id %s path %s", daemon_id, path)
                raise
            if existing is not None:
                self._drop(existing)
            self._subscribers[daemon_id] = target
        log.info("Subscribe daemon %s liveness event, path=%s.", daemon_id, path)

    def unsubscribe(self, daemon_id: str) -> None:
        """Stop watching a daemon; raise NotFoundError if it is not watched."""
        with self._lock:
            self._unsubscribe(daemon_id)

    def _unsubscribe(self, daemon_id: str) -> None:
        target = self._subscribers.pop(daemon_id, None)
        if target is None:
            raise NotFoundError(f"daemon {daemon_id} is not subscribed")
        self._drop(target)

    def _drop(self, target: _Target) -> None:
        if target.watched:
            target.watched = False
            try:
                self._selector.unregister(target.sock)
            except (KeyError, ValueError):
                pass
        target.sock.close()

    def run(self) -> None:
        """Start waiting for death events in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="liveness-monitor", daemon=True)
        self._thread.start()

    @staticmethod
    def _peer_closed(sock: socket.socket) -> bool:
        try:
            data = sock.recv(4096)
        except BlockingIOError:
            return False
        except OSError:
            return True
        return data == b""

    def _loop(self) -> None:
        log.info("Run daemons monitor...")
        try:
            while not self._stop.is_set():
                try:
                    ready = self._selector.select(timeout=self.poll_interval)
                except (OSError, ValueError) as err:
                    if not self._stop.is_set():
                        log.error("Monitor fails to wait events, %s. Exiting!", err)
                    return
                for key, _ in ready:
                    target: _Target = key.data
                    with self._lock:
                        if self._subscribers.get(target.daemon_id) is not target:
                            continue
                        if not target.watched or not self._peer_closed(target.sock):
                            continue
                        target.watched = False
                        self._selector.unregister(target.sock)
                    log.warning("Daemon %s died", target.daemon_id)
                    target.notifier.put(DeathEvent(daemon_id=target.daemon_id, path=target.path))
        finally:
            log.info("Exiting liveness monitor")

    def destroy(self) -> None:
        """Unsubscribe every daemon, stop the loop and release resources."""
        with self._lock:
            for daemon_id in list(self._subscribers):
                try:
                    self._unsubscribe(daemon_id)
                except (NotFoundError, OSError):
                    log.warning("fail to unsubscribe %s", daemon_id)
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self._selector.close()