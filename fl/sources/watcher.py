"""Source adapter for source-tree changes, debounced into reload requests.

Only modifications to files with the watched extension count. Each one
restarts the debounce window; a ReloadRequested is emitted once the window
passes without further changes (trailing edge).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchfiles import Change, awatch

from fl.session.events import EventCallback, ReloadRequested
from fl.sources import BaseSource

logger = logging.getLogger("fl.sources.watcher")


class Debouncer:
    """Trailing-edge debounce on the running event loop.

    Every ``trigger`` cancels the pending timer and starts a new one; the
    callback runs once with the last payload after ``delay`` seconds of quiet.
    """

    def __init__(self, delay: float, callback: Callable[[Any], None]) -> None:
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self, payload: Any = None) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire, payload)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, payload: Any) -> None:
        self._handle = None
        self.callback(payload)


class ChangeWatcherSource(BaseSource):
    """Watches a directory tree with watchfiles and emits debounced reloads."""

    def __init__(
        self,
        root: Path,
        extension: str = ".dart",
        debounce_seconds: float = 0.5,
        on_event: EventCallback | None = None,
    ) -> None:
        super().__init__(source_id="watcher", on_event=on_event)
        self.root = root
        self.extension = extension
        self.debouncer = Debouncer(debounce_seconds, self._settled)
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def qualifies(self, change: Change, path: str) -> bool:
        """Only modifications of files with the watched extension."""
        return change == Change.modified and Path(path).suffix == self.extension

    async def start(self) -> None:
        if not self.root.is_dir():
            self._fail(f"{self.root.name} directory not found")
            return

        self._stop_event = asyncio.Event()
        self._running = True
        self.started_at = self._now()
        self._task = asyncio.create_task(self._watch_loop())
        logger.debug("Watching %s for %s changes", self.root, self.extension)

    async def stop(self) -> None:
        """Cancel the subscription first, then any pending debounce timer."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.debouncer.cancel()

    def notify(self, change: Change, path: str) -> None:
        """Feed one raw filesystem change through the filter and debouncer."""
        if not self._running or not self.qualifies(change, path):
            return
        self.debouncer.trigger(path)

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self.qualifies,
                stop_event=self._stop_event,
            ):
                for change, path in changes:
                    self.notify(change, path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(f"watch loop failed: {e}")
            self._running = False

    def _settled(self, path: str) -> None:
        if self._running:
            self.emit(ReloadRequested(path=path))
