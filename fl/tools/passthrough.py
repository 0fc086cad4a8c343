"""``fl flutter ...``: run the build tool directly with inherited stdio."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from fl.config import ToolCommand
from fl.models import ToolError

logger = logging.getLogger("fl.tools.passthrough")


async def run_passthrough(tool: ToolCommand, args: Sequence[str], cwd: Path | None = None) -> int:
    """Run ``tool args...`` attached to our terminal and return its exit code.

    Raises:
        ToolError: The executable could not be started.
    """
    argv = tool.argv(*args)
    logger.debug("Running: %s", " ".join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
        )
    except FileNotFoundError:
        raise ToolError(f"{tool.executable} not found on PATH", tool=tool.executable)

    try:
        return await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.terminate()
        raise
