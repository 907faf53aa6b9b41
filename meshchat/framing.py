"""
framing.py: newline-delimited text frames.

Wire format:
- One frame = UTF-8 text followed by a single line feed (0x0A).
- Labeled mode puts "[YYYY-MM-DD HH:MM:SS] <username padded to 15>Message: "
  in front of the text; raw mode sends the text alone.
- No length prefix and no escaping. A line feed typed inside a message simply
  starts a new frame.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .errors import ProtocolViolation

logger = logging.getLogger(__name__)

DELIMITER = b'\n'
MAX_FRAME_SIZE = 1_048_576  # 1 MB cap for a frame still waiting on its delimiter
USERNAME_WIDTH = 15
TERMINATOR = 'Chat ended'
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
MESSAGE_LABEL = 'Message: '

_LABELED_RE = re.compile(
    r'^\[(?P<ts>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\] (?P<origin>.*?)\s*Message: (?P<text>.*)$',
    re.DOTALL,
)


class FrameKind(Enum):
    NORMAL = 'normal'
    TERMINATOR = 'terminator'


@dataclass
class Frame:
    """One chat message (or the end-of-chat sentinel) as carried on the wire."""

    text: str
    origin: str = ''
    timestamp: Optional[datetime] = None
    kind: FrameKind = FrameKind.NORMAL

    @property
    def is_terminator(self) -> bool:
        return self.kind is FrameKind.TERMINATOR

    @property
    def labeled(self) -> bool:
        return self.timestamp is not None


class FrameCodec:
    """Turns text into wire frames and wire lines back into Frames.

    Args:
        username: Origin label to stamp on outbound frames. ``None`` or an
            empty string selects raw mode (no prefix, no timestamp).
        width: Fixed column width of the username in the prefix.
        terminator: Reserved payload that ends the chat.
        clock: Returns the current local time; swapped out by tests.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        width: int = USERNAME_WIDTH,
        terminator: str = TERMINATOR,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.username = username or ''
        self.width = width
        self.terminator = terminator
        self._clock = clock

    def make_frame(self, text: str) -> Optional[Frame]:
        """Build an outbound Frame, or ``None`` when there is nothing to send."""
        text = text.strip()
        if not text:
            return None
        kind = FrameKind.TERMINATOR if text == self.terminator else FrameKind.NORMAL
        return self._stamp(Frame(text=text, kind=kind))

    def terminator_frame(self) -> Frame:
        return self._stamp(Frame(text=self.terminator, kind=FrameKind.TERMINATOR))

    def _stamp(self, frame: Frame) -> Frame:
        if self.username:
            frame.origin = self.username
            frame.timestamp = self._clock().replace(microsecond=0)
        return frame

    def render(self, frame: Frame) -> str:
        """Text of a frame as it appears on the wire, without the delimiter."""
        if not frame.labeled:
            return frame.text
        label = frame.origin[:self.width].ljust(self.width)
        stamp = frame.timestamp.strftime(TIMESTAMP_FORMAT)
        return f'[{stamp}] {label}{MESSAGE_LABEL}{frame.text}'

    def encode(self, frame: Frame) -> bytes:
        return self.render(frame).encode('utf-8') + DELIMITER

    def decode(self, line: bytes) -> Optional[Frame]:
        """Parse one delimiter-free line. Blank lines decode to ``None``."""
        text = line.decode('utf-8', errors='replace').strip()
        if not text:
            return None
        match = _LABELED_RE.match(text)
        if match:
            frame = Frame(
                text=match.group('text').strip(),
                origin=match.group('origin').strip(),
                timestamp=datetime.strptime(match.group('ts'), TIMESTAMP_FORMAT),
            )
        else:
            frame = Frame(text=text)
        if frame.text == self.terminator:
            frame.kind = FrameKind.TERMINATOR
        return frame


class FrameReader:
    """Pulls delimiter-terminated lines off a connection.

    ``connection`` only needs a ``recv(bufsize) -> bytes`` method, so a
    PeerConnection, a plain socket or a TLS socket all work.
    """

    def __init__(self, connection, max_frame_size: int = MAX_FRAME_SIZE, chunk_size: int = 4096) -> None:
        self._connection = connection
        self._buf = bytearray()
        self._max_frame_size = max_frame_size
        self._chunk_size = chunk_size

    def read_line(self) -> Optional[bytes]:
        """Return the next line without its delimiter, or ``None`` at end of stream.

        Bytes left over when the stream ends without a delimiter are dropped;
        the peer is treated as having disconnected.

        Raises:
            ProtocolViolation: if more than ``max_frame_size`` bytes arrive
                without a delimiter.
        """
        while True:
            idx = self._buf.find(DELIMITER)
            if idx >= 0:
                line = bytes(self._buf[:idx])
                del self._buf[:idx + 1]
                return line
            if len(self._buf) > self._max_frame_size:
                raise ProtocolViolation(f'Frame exceeds {self._max_frame_size} bytes without a delimiter')
            chunk = self._connection.recv(self._chunk_size)
            if not chunk:
                if self._buf:
                    logger.debug('Dropping %d bytes of unterminated frame at end of stream', len(self._buf))
                    self._buf.clear()
                return None
            self._buf.extend(chunk)

    def read_frame(self, codec: FrameCodec) -> Optional[Frame]:
        """Next non-blank Frame, or ``None`` once the peer has gone away."""
        while True:
            line = self.read_line()
            if line is None:
                return None
            frame = codec.decode(line)
            if frame is not None:
                return frame
