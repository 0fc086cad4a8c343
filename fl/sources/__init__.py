"""Abstract base class for run session event sources.

All sources (child output, keyboard, file watcher, signals, VM Service
bridge) inherit from this. Each source is responsible for:
1. Attaching to whatever it observes
2. Turning raw observations into SessionEvent values
3. Calling the on_event callback for each one
4. Handling its own errors without taking the session down
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone

from fl.session.events import EventCallback, SessionEvent

logger = logging.getLogger("fl.sources")


class BaseSource(abc.ABC):
    """Base class for all session event sources."""

    def __init__(self, source_id: str, on_event: EventCallback | None = None) -> None:
        self.source_id = source_id
        self.on_event = on_event
        self.events_emitted: int = 0
        self.started_at: datetime | None = None
        self._running: bool = False
        self._error: str | None = None

    @abc.abstractmethod
    async def start(self) -> None:
        """Start observing.

        Must set self._running = True on success and self.started_at.
        Must catch and store exceptions in self._error rather than raising.
        """
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        """Stop observing and release resources. Safe to call twice.

        Must set self._running = False.
        """
        ...

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def error(self) -> str | None:
        return self._error

    def emit(self, event: SessionEvent) -> None:
        """Hand an event to the session."""
        self.events_emitted += 1
        if self.on_event is not None:
            self.on_event(event)

    def _fail(self, message: str) -> None:
        self._error = message
        logger.warning("%s: %s", self.source_id, message)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
