"""Console output synchronizer and cancellable local input.

Both chat paths print to the same terminal. Every logical write (one full
line, optionally followed by a prompt redraw) goes out as a single
``write`` + ``flush`` under one lock, so a received message never lands in
the middle of a prompt or of another message.
"""
import logging
import queue
import sys
from threading import Lock, Thread
from typing import Optional, TextIO

from termcolor import colored

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = 'You: '


class Console:
    """Serializes all chat output onto one text stream."""

    def __init__(self, stream: Optional[TextIO] = None, prompt: str = DEFAULT_PROMPT,
                 color: Optional[bool] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.prompt = prompt
        if color is None:
            isatty = getattr(self.stream, 'isatty', None)
            color = bool(isatty and isatty())
        self.color = color
        self._lock = Lock()
        self._prompt_shown = False

    def _paint(self, text: str, color: Optional[str]) -> str:
        if self.color and color:
            return colored(text, color)
        return text

    def _emit(self, text: str) -> None:
        # Caller holds self._lock
        try:
            self.stream.write(text)
            self.stream.flush()
        except (OSError, ValueError) as exc:
            # Terminal gone (closed pipe); nothing left to show output on
            logger.debug('Console write failed: %s', exc)

    def write_line(self, text: str, color: Optional[str] = None) -> None:
        """Print one line; redraw the prompt after it if one was showing."""
        with self._lock:
            unit = self._paint(text, color) + '\n'
            if self._prompt_shown:
                # Start over on a fresh line so the message is not glued to "You: "
                unit = '\r\n' + unit + self.prompt
            self._emit(unit)

    def show_prompt(self) -> None:
        if not self.prompt:
            return
        with self._lock:
            self._emit(self.prompt)
            self._prompt_shown = True

    def clear_prompt(self) -> None:
        with self._lock:
            self._prompt_shown = False

    def show_received(self, text: str) -> None:
        self.write_line(f'Received: {text}', color='cyan')

    def status(self, text: str) -> None:
        self.write_line(text, color='yellow')

    def error(self, text: str) -> None:
        self.write_line(text, color='red')


_EOF = object()
_CANCELLED = object()


class InputSource:
    """Lines typed by the local user, readable with a cancellable blocking call.

    A daemon thread pumps ``stream.readline()`` into a queue. The outbound
    path waits on the queue rather than on the stream, so the shutdown
    coordinator can wake it with :meth:`cancel` even though a read on the
    terminal itself cannot be interrupted.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._queue: 'queue.Queue[object]' = queue.Queue()
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = Thread(target=self._pump, name='chat-input', daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        while True:
            try:
                line = self._stream.readline()
            except (OSError, ValueError) as exc:
                logger.debug('Input stream failed: %s', exc)
                line = ''
            if not line:
                self._queue.put(_EOF)
                return
            self._queue.put(line.rstrip('\r\n'))

    def read_line(self) -> Optional[str]:
        """Next input line, or ``None`` once input ended or was cancelled."""
        self.start()
        item = self._queue.get()
        if item is _EOF or item is _CANCELLED:
            # Leave the marker for any later caller
            self._queue.put(item)
            return None
        return item

    def cancel(self) -> None:
        self._queue.put(_CANCELLED)
