"""Source adapter for termination signals (SIGINT, SIGTERM)."""

from __future__ import annotations

import asyncio
import logging
import signal

from fl.session.events import EventCallback, SignalReceived
from fl.sources import BaseSource

logger = logging.getLogger("fl.sources.signals")

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalSource(BaseSource):
    """Turns termination signals into SignalReceived events on the loop."""

    def __init__(
        self,
        on_event: EventCallback | None = None,
        signals: tuple[signal.Signals, ...] = TERMINATION_SIGNALS,
    ) -> None:
        super().__init__(source_id="signals", on_event=on_event)
        self.signals = signals
        self._installed: list[signal.Signals] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        for signum in self.signals:
            try:
                self._loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Cannot handle %s: %s", signum.name, e)
                continue
            self._installed.append(signum)

        if self._installed:
            self._running = True
            self.started_at = self._now()

    async def stop(self) -> None:
        self._running = False
        if self._loop is not None:
            for signum in self._installed:
                self._loop.remove_signal_handler(signum)
        self._installed.clear()

    def _on_signal(self, signum: int) -> None:
        logger.debug("Received signal %s", signum)
        self.emit(SignalReceived(signum=int(signum)))
