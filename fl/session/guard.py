"""Single-flight guard shared by keyboard and file-watcher reloads."""

from __future__ import annotations

import enum
import time
from collections.abc import Callable


class GuardState(str, enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


class ReloadGuard:
    """Two-state lock with a cool-down deadline.

    ``try_acquire`` succeeds only when idle and then stays busy for the given
    cool-down. Requests made while busy are dropped, not queued. The guard
    goes back to idle by itself once the deadline passes.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._busy_until: float | None = None

    @property
    def state(self) -> GuardState:
        if self._busy_until is not None and self._clock() >= self._busy_until:
            self._busy_until = None
        return GuardState.IDLE if self._busy_until is None else GuardState.BUSY

    @property
    def is_busy(self) -> bool:
        return self.state is GuardState.BUSY

    def try_acquire(self, cooldown: float) -> bool:
        if self.is_busy:
            return False
        self._busy_until = self._clock() + cooldown
        return True

    def release(self) -> None:
        self._busy_until = None
