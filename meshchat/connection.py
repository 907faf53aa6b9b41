"""Connection establishment and the PeerConnection wrapper.

A session owns exactly one PeerConnection. Either side may be the Listener
(accepts one peer, then stops listening) or the Initiator (resolves and
connects). TLS upgrades happen later in :mod:`meshchat.security` by swapping
the wrapped socket.
"""
from __future__ import annotations

import errno
import logging
import socket
from enum import Enum
from threading import Lock
from typing import Optional, Tuple

from .errors import ConnectError, ResolutionError, TransportError

logger = logging.getLogger(__name__)

Endpoint = Tuple[str, int]


class Role(Enum):
    LISTENER = 'listener'
    INITIATOR = 'initiator'


class Security(Enum):
    PLAIN = 'plain'
    TLS = 'tls'


class ConnState(Enum):
    CONNECTING = 'connecting'
    HANDSHAKING = 'handshaking'
    ACTIVE = 'active'
    CLOSING = 'closing'
    CLOSED = 'closed'


def safe_close(sock):
    """Shut down and close a socket, ignoring errors from one that is already gone.

    Args:
        sock: A socket-like object with ``shutdown`` and ``close`` methods,
            or ``None``.
    """
    # Full shutdown first so a thread blocked in recv() on it wakes up
    try:
        if sock:
            sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        if sock:
            sock.close()
    except OSError:
        pass


class PeerConnection:
    """The single duplex channel of a chat session.

    Writes are serialized with a lock so a Terminator sent during shutdown
    never lands in the middle of another frame. ``release()`` is the only
    operation allowed to race with an in-flight read or write: it shuts the
    socket down, which makes the blocked call return.
    """

    def __init__(self, sock: socket.socket, role: Role, peer: Endpoint) -> None:
        self._sock = sock
        self.role = role
        self.peer = peer
        self.security = Security.PLAIN
        self.state = ConnState.ACTIVE
        self._send_lock = Lock()
        self._state_lock = Lock()
        self._released = False
        try:
            self.local: Optional[Endpoint] = sock.getsockname()[:2]
        except OSError:
            self.local = None

    @property
    def socket(self) -> socket.socket:
        return self._sock

    @property
    def released(self) -> bool:
        return self._released

    def begin_handshake(self) -> None:
        self.state = ConnState.HANDSHAKING

    def upgrade(self, tls_sock: socket.socket) -> None:
        """Swap in the TLS session once its handshake has completed."""
        self._sock = tls_sock
        self.security = Security.TLS
        self.state = ConnState.ACTIVE

    def send(self, data: bytes) -> None:
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except (OSError, ValueError) as exc:
                # ValueError: TLS object already torn down by release()
                raise TransportError(f'Send to {self.describe_peer()} failed: {exc}') from exc

    def try_send(self, data: bytes, timeout: float = 1.0) -> bool:
        """Send unless another write is in flight, giving up after ``timeout``.

        Returns ``False`` without sending when the send lock is busy (a
        writer is stuck on a peer that stopped reading).
        """
        if not self._send_lock.acquire(blocking=False):
            return False
        try:
            self._sock.settimeout(timeout)
            try:
                self._sock.sendall(data)
            finally:
                self._sock.settimeout(None)
        except (OSError, ValueError) as exc:
            raise TransportError(f'Send to {self.describe_peer()} failed: {exc}') from exc
        finally:
            self._send_lock.release()
        return True

    def recv(self, bufsize: int) -> bytes:
        try:
            return self._sock.recv(bufsize)
        except (OSError, ValueError) as exc:
            raise TransportError(f'Receive from {self.describe_peer()} failed: {exc}') from exc

    def release(self) -> bool:
        """Shut the connection down. Returns ``False`` if it was already released."""
        with self._state_lock:
            if self._released:
                return False
            self._released = True
            self.state = ConnState.CLOSING
        logger.debug('Releasing connection to %s', self.describe_peer())
        safe_close(self._sock)
        return True

    def mark_closed(self) -> None:
        with self._state_lock:
            self.state = ConnState.CLOSED

    def describe_peer(self) -> str:
        return f'{self.peer[0]}:{self.peer[1]}'

    def __repr__(self) -> str:
        return (f'PeerConnection(role={self.role.value}, security={self.security.value}, '
                f'peer={self.describe_peer()}, state={self.state.value})')


class Listener:
    """Binds a port and hands out exactly one accepted PeerConnection.

    The socket is bound in the constructor so the chosen address (port 0
    included) can be read from :attr:`address` before ``accept`` blocks.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 8000) -> None:
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        # Allow quick restart
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            s.listen(1)
        except OSError as exc:
            s.close()
            if exc.errno == errno.EADDRINUSE:
                raise ConnectError(f'Port {port} is already in use on {host}') from exc
            raise ConnectError(f'Cannot listen on {host}:{port}: {exc}') from exc
        self._sock: Optional[socket.socket] = s
        self.address: Endpoint = s.getsockname()[:2]

    def accept(self) -> PeerConnection:
        """Block until one peer connects, then stop listening."""
        if self._sock is None:
            raise ConnectError('Listener already used')
        try:
            conn, addr = self._sock.accept()
        except OSError as exc:
            raise ConnectError(f'Accept on port {self.address[1]} failed: {exc}') from exc
        finally:
            self.close()
        logger.info('Accepted connection from %s:%s', addr[0], addr[1])
        return PeerConnection(conn, Role.LISTENER, addr[:2])

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()

    def __enter__(self) -> 'Listener':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def listen_connection(host: str = '0.0.0.0', port: int = 8000) -> PeerConnection:
    """Bind, wait for a single peer and return the accepted connection."""
    with Listener(host, port) as listener:
        logger.info('Listening for incoming connections on %s:%s', *listener.address)
        return listener.accept()


def resolve_peer(host: str, port: int):
    """Candidate stream addresses for ``host``/``port``, in resolver order."""
    try:
        return socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise ResolutionError(f'Cannot resolve {host!r}: {exc}') from exc


def connect_peer(host: str, port: int, timeout: Optional[float] = 10.0) -> PeerConnection:
    """Resolve ``host`` and connect to the first candidate that accepts.

    Raises:
        ResolutionError: the name did not resolve.
        ConnectError: every candidate refused, timed out or was unreachable.
    """
    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in resolve_peer(host, port):
        s = socket.socket(family, socktype, proto)
        s.settimeout(timeout)
        try:
            s.connect(sockaddr)
        except OSError as exc:
            logger.debug('Connect to %s failed: %s', sockaddr, exc)
            last_error = exc
            s.close()
            continue
        s.settimeout(None)
        logger.info('Connected to peer at %s:%s', sockaddr[0], sockaddr[1])
        return PeerConnection(s, Role.INITIATOR, sockaddr[:2])

    if isinstance(last_error, socket.timeout):
        raise ConnectError(f'Connection to {host}:{port} timed out') from last_error
    raise ConnectError(f'Failed to connect to {host}:{port} -> {last_error}') from last_error
