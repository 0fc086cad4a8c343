"""Source adapter for single-keystroke terminal input.

Puts the controlling terminal into cbreak mode (no line buffering, no echo)
for the lifetime of the session and emits one KeyPressed per character.
Terminal settings are restored on stop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, TextIO

from fl.session.events import EventCallback, KeyPressed
from fl.sources import BaseSource

logger = logging.getLogger("fl.sources.keyboard")


class RawTerminal:
    """Context manager that switches a tty fd to cbreak mode and back."""

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self._saved: list[Any] | None = None

    def __enter__(self) -> RawTerminal:
        self.enable()
        return self

    def __exit__(self, *args: object) -> None:
        self.restore()

    def enable(self) -> bool:
        try:
            import termios
            import tty
        except ImportError:
            return False
        try:
            self._saved = termios.tcgetattr(self.fd)
            tty.setcbreak(self.fd)
        except (termios.error, OSError) as e:
            logger.debug("Could not enter cbreak mode: %s", e)
            self._saved = None
            return False
        return True

    def restore(self) -> None:
        if self._saved is None:
            return
        import termios

        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
        except (termios.error, OSError) as e:
            logger.debug("Could not restore terminal settings: %s", e)
        self._saved = None


class KeyboardSource(BaseSource):
    """Reads keystrokes from stdin without waiting for Enter."""

    def __init__(
        self,
        on_event: EventCallback | None = None,
        stream: TextIO | None = None,
    ) -> None:
        super().__init__(source_id="keyboard", on_event=on_event)
        self.stream = stream or sys.stdin
        self._fd: int | None = None
        self._terminal: RawTerminal | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        try:
            fd = self.stream.fileno()
        except (OSError, ValueError) as e:
            self._fail(f"stdin has no file descriptor: {e}")
            return

        if not os.isatty(fd):
            logger.debug("stdin is not a terminal; key commands disabled")
            return

        self._terminal = RawTerminal(fd)
        self._terminal.enable()
        self._loop = asyncio.get_running_loop()
        try:
            self._loop.add_reader(fd, self._on_readable)
        except (NotImplementedError, OSError) as e:
            self._terminal.restore()
            self._terminal = None
            self._fail(f"cannot watch stdin: {e}")
            return

        self._fd = fd
        self._running = True
        self.started_at = self._now()

    async def stop(self) -> None:
        self._running = False
        if self._loop is not None and self._fd is not None:
            self._loop.remove_reader(self._fd)
        self._fd = None
        if self._terminal is not None:
            self._terminal.restore()
            self._terminal = None

    def _on_readable(self) -> None:
        assert self._fd is not None
        try:
            data = os.read(self._fd, 64)
        except OSError as e:
            self._fail(f"stdin read failed: {e}")
            data = b""

        if not data:
            # EOF: stop watching, the session keeps running without keys
            if self._loop is not None:
                self._loop.remove_reader(self._fd)
            self._running = False
            return

        for char in data.decode("utf-8", errors="ignore"):
            self.feed(char)

    def feed(self, char: str) -> None:
        """Emit one keystroke. Line terminators are ignored."""
        if char in ("\r", "\n"):
            return
        self.emit(KeyPressed(key=char))
