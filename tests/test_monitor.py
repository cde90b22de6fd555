import queue
import shutil
import socket
import tempfile
import threading
import os
import time

import pytest

from nyduskit.database import AlreadyExistsError, NotFoundError
from nyduskit.monitor import DeathEvent, LivenessMonitor


class _Server:
    def __init__(self, path):
        self.path = path
        self._listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._listener.bind(path)
        self._listener.listen(1)
        self._release = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        conn, _ = self._listener.accept()
        self._release.wait()
        conn.close()

    def close(self):
        self._release.set()
        self._thread.join(5)
        self._listener.close()


@pytest.fixture
def sock_dir():
    directory = tempfile.mkdtemp(prefix="lm")
    yield directory
    shutil.rmtree(directory, ignore_errors=True)


def test_liveness_monitor(sock_dir):
    s1 = _Server(os.path.join(sock_dir, "s1.sock"))
    s2 = _Server(os.path.join(sock_dir, "s2.sock"))
    monitor = LivenessMonitor()
    notifier = queue.Queue(maxsize=10)
    try:
        monitor.subscribe("daemon_1", s1.path, notifier)
        monitor.subscribe("daemon_2", s2.path, notifier)
        monitor.run()
        time.sleep(0.2)

        s1.close()
        event = notifier.get(timeout=5)
        assert event == DeathEvent(daemon_id="daemon_1", path=s1.path)

        monitor.unsubscribe("daemon_2")
        s2.close()
        time.sleep(0.5)
        assert notifier.qsize() == 0
    finally:
        monitor.destroy()
        s1.close()
        s2.close()

    with pytest.raises(NotFoundError):
        monitor.unsubscribe("daemon_1")


def test_duplicate_subscription_rejected(sock_dir):
    server = _Server(os.path.join(sock_dir, "dup.sock"))
    monitor = LivenessMonitor()
    try:
        monitor.subscribe("d", server.path, queue.Queue())
        with pytest.raises(AlreadyExistsError):
            monitor.subscribe("d", server.path, queue.Queue())
    finally:
        monitor.destroy()
        server.close()


def test_unsubscribe_unknown_raises():
    monitor = LivenessMonitor()
    try:
        with pytest.raises(NotFoundError):
            monitor.unsubscribe("missing")
    finally:
        monitor.destroy()


def test_subscribe_missing_socket_raises(sock_dir):
    monitor = LivenessMonitor()
    monitor.connect_attempts = 2
    monitor.connect_delay = 0.01
    try:
        with pytest.raises(OSError):
            monitor.subscribe("d", os.path.join(sock_dir, "none.sock"), queue.Queue())
        with pytest.raises(NotFoundError):
            monitor.unsubscribe("d")
    finally:
        monitor.destroy()