"""
Shared fixtures for the nchat test suite.
"""
import socket
import threading

import pytest

import nchat_udp_handler

WAIT_TIMEOUT = 5.0


class SignalRecorder:
    """Collects status messages and log entries emitted by a handler."""

    def __init__(self):
        self.statuses = []
        self.entries = []
        self._cond = threading.Condition()

    def on_status(self, message):
        with self._cond:
            self.statuses.append(message)
            self._cond.notify_all()

    def on_message(self, entry):
        with self._cond:
            self.entries.append(entry)
            self._cond.notify_all()

    def wait_for_entries(self, count, timeout=WAIT_TIMEOUT):
        with self._cond:
            return self._cond.wait_for(lambda: len(self.entries) >= count, timeout)

    def wait_for_status(self, text, timeout=WAIT_TIMEOUT):
        with self._cond:
            return self._cond.wait_for(
                lambda: any(text in s for s in self.statuses), timeout
            )


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "logs" / "out.log"


@pytest.fixture
def handler(log_path):
    h = nchat_udp_handler.UdpMessageHandler(log_path)
    yield h
    h.close()


@pytest.fixture
def recorder(handler):
    rec = SignalRecorder()
    handler.status_message.connect(rec.on_status)
    handler.message_received.connect(rec.on_message)
    yield rec
    handler.status_message.disconnect(rec.on_status)
    handler.message_received.disconnect(rec.on_message)


@pytest.fixture
def sender():
    """Plain loopback UDP socket acting as a remote peer."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()