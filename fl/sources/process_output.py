"""Source adapter for the child process's stdout/stderr.

Each decoded line becomes an OutputLine event. Once both streams reach EOF the
adapter waits for the exit status and emits a single ProcessExited, so every
output line is queued ahead of the exit.
"""

from __future__ import annotations

import asyncio
import logging

from fl.session.events import EventCallback, OutputLine, ProcessExited
from fl.sources import BaseSource

logger = logging.getLogger("fl.sources.process_output")


class ProcessOutputSource(BaseSource):
    """Relays the lines a running child process writes."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_event: EventCallback | None = None,
    ) -> None:
        super().__init__(source_id="process-output", on_event=on_event)
        self.process = process
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self.started_at = self._now()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        readers = []
        if self.process.stdout is not None:
            readers.append(self._read_stream(self.process.stdout, "stdout"))
        if self.process.stderr is not None:
            readers.append(self._read_stream(self.process.stderr, "stderr"))
        await asyncio.gather(*readers)

        code = await self.process.wait()
        logger.debug("Child process exited with code %s", code)
        self._running = False
        self.emit(ProcessExited(code=code))

    async def _read_stream(self, stream: asyncio.StreamReader, name: str) -> None:
        try:
            async for raw_line in stream:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                self.emit(OutputLine(text=line, stream=name))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(f"{name} read failed: {e}")
