"""Shared fixtures for the chat tests: pipe-backed input, fake connections, polling."""
import io
import os
import socket
import sys
import time
from threading import Event

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from meshchat.connection import PeerConnection, Role
from meshchat.console import Console, InputSource
from meshchat.errors import TransportError


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class PipeInput:
    """Keyboard stand-in: lines typed here show up on a real blocking stream."""

    def __init__(self):
        r, w = os.pipe()
        self.stream = os.fdopen(r, 'r', encoding='utf-8')
        self._w = w
        self.source = InputSource(self.stream)

    def type(self, line):
        os.write(self._w, (line + '\n').encode('utf-8'))

    def close(self):
        if self._w is not None:
            os.close(self._w)
            self._w = None


def make_console(prompt='You: '):
    buf = io.StringIO()
    return Console(buf, prompt=prompt, color=False), buf


def socket_pair_connection():
    """PeerConnection on one end of a socketpair plus the raw other end."""
    a, b = socket.socketpair()
    b.settimeout(5)
    return PeerConnection(a, Role.LISTENER, ('peer', 0)), b


class BrokenSendConnection:
    """Connection whose reads block until release() and whose writes always fail."""

    def __init__(self):
        self.released = Event()
        self.release_calls = 0
        self.closed = False

    def send(self, data):
        raise TransportError('Send failed: broken pipe')

    def try_send(self, data, timeout=1.0):
        return self.send(data)

    def recv(self, bufsize):
        self.released.wait(5)
        return b''

    def release(self):
        self.release_calls += 1
        self.released.set()
        return self.release_calls == 1

    def mark_closed(self):
        self.closed = True
