"""Typed events multiplexed onto the run session's single queue.

Every event source (child output, keyboard, file watcher, VM Service bridge,
signals) turns what it observes into one of these and hands it to the
supervisor, which handles them one at a time in arrival order.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class OutputLine:
    """One line of the child process's stdout or stderr."""

    text: str
    stream: str = "stdout"


@dataclass(frozen=True)
class ProcessExited:
    """The child process ended and both its output streams are drained."""

    code: int


@dataclass(frozen=True)
class KeyPressed:
    key: str


@dataclass(frozen=True)
class ReloadRequested:
    """A debounced batch of source changes settled."""

    path: str


@dataclass(frozen=True)
class BridgeLine:
    """A formatted line relayed from the VM Service.

    ``kind`` is ``stdout``, ``stderr`` or ``log``.
    """

    text: str
    kind: str = "stdout"


@dataclass(frozen=True)
class SignalReceived:
    signum: int


SessionEvent = Union[OutputLine, ProcessExited, KeyPressed, ReloadRequested, BridgeLine, SignalReceived]

EventCallback = Callable[[SessionEvent], None]
