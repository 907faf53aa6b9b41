"""Duplex message loop and its shutdown coordination.

One ChatSession = one PeerConnection + two threads:

- the inbound path decodes frames from the peer and shows them;
- the outbound path reads local lines, frames them and sends them.

Whatever ends the chat first (local ``exit``, the peer's Terminator or
disconnect, Ctrl-C, an I/O error) goes through ShutdownCoordinator.request(),
which moves SessionState out of RUNNING exactly once, releases the connection
so a blocked read returns, and cancels the pending input read. The control
thread then joins both paths in ShutdownCoordinator.wait().
"""
import logging
from enum import Enum
from threading import RLock, Thread
from typing import List, Optional

from .config import ChatSettings
from .connection import PeerConnection
from .console import Console, InputSource
from .errors import ProtocolViolation, TransportError
from .framing import FrameCodec, FrameReader

logger = logging.getLogger(__name__)


class RunState(Enum):
    RUNNING = 'running'
    DRAINING = 'draining'
    STOPPED = 'stopped'


class ShutdownReason(Enum):
    LOCAL_EXIT = 'You ended the chat.'
    PEER_TERMINATED = 'Peer ended the chat.'
    PEER_CLOSED = 'Connection closed by peer.'
    INTERRUPTED = 'Received interrupt signal. Exiting chat...'
    TRANSPORT_ERROR = 'Connection lost.'
    PROTOCOL_ERROR = 'Peer sent an invalid frame.'

    @property
    def is_error(self) -> bool:
        return self in (ShutdownReason.TRANSPORT_ERROR, ShutdownReason.PROTOCOL_ERROR)


# Triggers after which the peer can still read a goodbye from us
_NEEDS_TERMINATOR = (
    ShutdownReason.INTERRUPTED,
    ShutdownReason.TRANSPORT_ERROR,
    ShutdownReason.PROTOCOL_ERROR,
)

TERMINATOR_SEND_TIMEOUT = 1.0


class SessionState:
    """Run flag and live connection shared by both paths and the coordinator.

    Reads of :attr:`run_state` are plain attribute loads; transitions are
    compare-and-set under a lock, so each edge is taken exactly once. The
    lock is reentrant: a signal handler may run ``begin_draining`` on the
    main thread while that thread is inside ``mark_stopped``.
    """

    def __init__(self, connection: Optional[PeerConnection] = None) -> None:
        self.connection = connection
        self._run_state = RunState.RUNNING
        self._lock = RLock()

    @property
    def run_state(self) -> RunState:
        return self._run_state

    def is_running(self) -> bool:
        return self._run_state is RunState.RUNNING

    def _advance(self, expected: RunState, new: RunState) -> bool:
        with self._lock:
            if self._run_state is not expected:
                return False
            self._run_state = new
            return True

    def begin_draining(self) -> bool:
        return self._advance(RunState.RUNNING, RunState.DRAINING)

    def mark_stopped(self) -> bool:
        return self._advance(RunState.DRAINING, RunState.STOPPED)


class ShutdownCoordinator:
    """Collapses every termination trigger into one orderly teardown."""

    def __init__(self, state: SessionState, codec: FrameCodec, console: Console,
                 input_source: Optional[InputSource] = None) -> None:
        self.state = state
        self.codec = codec
        self.console = console
        self.input_source = input_source
        self.reason: Optional[ShutdownReason] = None
        self.error: Optional[BaseException] = None
        self._threads: List[Thread] = []

    def attach(self, *threads: Thread) -> None:
        self._threads.extend(threads)

    def request(self, reason: ShutdownReason, error: Optional[BaseException] = None) -> bool:
        """Start shutting down. Only the first call per session has any effect.

        Safe to call from either path and from a signal handler.
        """
        if not self.state.begin_draining():
            logger.debug('Shutdown already in progress; ignoring %s', reason.name)
            return False
        self.reason = reason
        self.error = error
        logger.info('Shutting down: %s', reason.name)
        if error is not None:
            self.console.error(f'{reason.value} ({error})')
        else:
            self.console.status(reason.value)
        try:
            if reason in _NEEDS_TERMINATOR:
                self._send_terminator()
        finally:
            self._release()
        return True

    def _send_terminator(self) -> None:
        conn = self.state.connection
        if conn is None:
            return
        try:
            sent = conn.try_send(self.codec.encode(self.codec.terminator_frame()), TERMINATOR_SEND_TIMEOUT)
            if not sent:
                logger.debug('Outbound send in progress; Terminator skipped')
        except TransportError as exc:
            logger.debug('Best-effort Terminator not delivered: %s', exc)

    def _release(self) -> None:
        conn = self.state.connection
        if conn is not None:
            conn.release()
        if self.input_source is not None:
            self.input_source.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[ShutdownReason]:
        """Join both paths, then mark the connection Closed (once)."""
        for thread in self._threads:
            thread.join(timeout)
        if any(thread.is_alive() for thread in self._threads):
            return self.reason
        if self.state.mark_stopped():
            conn = self.state.connection
            if conn is not None:
                conn.mark_closed()
            self.state.connection = None
            logger.debug('Session stopped (%s)', self.reason.name if self.reason else None)
        return self.reason


class ChatSession:
    """Runs the inbound and outbound paths over one established connection."""

    def __init__(self, connection: PeerConnection, settings: Optional[ChatSettings] = None,
                 console: Optional[Console] = None, input_source: Optional[InputSource] = None,
                 codec: Optional[FrameCodec] = None) -> None:
        self.settings = settings or ChatSettings()
        self.connection = connection
        self.console = console or Console(prompt=self.settings.prompt)
        self.input_source = input_source or InputSource()
        self.codec = codec or FrameCodec(
            username=self.settings.username,
            width=self.settings.username_width,
            terminator=self.settings.terminator,
        )
        self.state = SessionState(connection)
        self.coordinator = ShutdownCoordinator(self.state, self.codec, self.console, self.input_source)
        self._reader = FrameReader(connection)
        self._inbound: Optional[Thread] = None
        self._outbound: Optional[Thread] = None

    def start(self) -> None:
        self._inbound = Thread(target=self.receive_messages, name='chat-inbound', daemon=True)
        self._outbound = Thread(target=self.send_messages, name='chat-outbound', daemon=True)
        self.coordinator.attach(self._inbound, self._outbound)
        self._inbound.start()
        self._outbound.start()

    def wait(self, timeout: Optional[float] = None) -> Optional[ShutdownReason]:
        return self.coordinator.wait(timeout)

    def run(self) -> Optional[ShutdownReason]:
        """Start both paths and block until the session is over."""
        self.start()
        return self.wait()

    def interrupt(self) -> bool:
        """External interrupt (Ctrl-C, SIGTERM)."""
        return self.coordinator.request(ShutdownReason.INTERRUPTED)

    def receive_messages(self) -> None:
        """Inbound path: decode and display frames until the chat ends."""
        while self.state.is_running():
            try:
                frame = self._reader.read_frame(self.codec)
            except ProtocolViolation as exc:
                self.coordinator.request(ShutdownReason.PROTOCOL_ERROR, exc)
                break
            except TransportError as exc:
                if self.state.is_running():
                    self.coordinator.request(ShutdownReason.TRANSPORT_ERROR, exc)
                break
            if frame is None:
                self.coordinator.request(ShutdownReason.PEER_CLOSED)
                break
            self.console.show_received(self.codec.render(frame))
            if frame.is_terminator:
                self.coordinator.request(ShutdownReason.PEER_TERMINATED)
                break
        logger.debug('Inbound path finished')

    def send_messages(self) -> None:
        """Outbound path: read local lines, frame and send them."""
        exit_command = self.settings.exit_command
        while self.state.is_running():
            self.console.show_prompt()
            line = self.input_source.read_line()
            self.console.clear_prompt()
            if line is None:
                # End of local input counts as typing the exit command
                if self.state.is_running():
                    self._send_goodbye()
                break
            if not self.state.is_running():
                break
            if line.strip() == exit_command:
                self._send_goodbye()
                break
            frame = self.codec.make_frame(line)
            if frame is None:
                continue
            try:
                self.connection.send(self.codec.encode(frame))
            except TransportError as exc:
                self.coordinator.request(ShutdownReason.TRANSPORT_ERROR, exc)
                break
        logger.debug('Outbound path finished')

    def _send_goodbye(self) -> None:
        try:
            self.connection.send(self.codec.encode(self.codec.terminator_frame()))
        except TransportError as exc:
            logger.debug('Terminator not delivered: %s', exc)
        self.coordinator.request(ShutdownReason.LOCAL_EXIT)
