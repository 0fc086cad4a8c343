"""Device resolution: cache, listing, ranking, filtering and the numbered prompt."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from typing import TextIO

from fl.device.flutter import FlutterBackend
from fl.device.registry import DeviceRegistry, rank_candidates, rank_records
from fl.device.selection import PlatformFilter, SelectionContext, apply_filter
from fl.models import DeviceDescriptor, DeviceRecord, NoDevicesError, UsageError
from fl.terminal import cyan, echo, gray, red, yellow

logger = logging.getLogger("fl.device.picker")

PROMPT = 'Please choose one (or "q" to quit, "r" to refresh): '

ReadLine = Callable[[str], Awaitable["str | None"]]


def _set_ready(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


async def read_stdin_line(prompt: str, stream: TextIO | None = None) -> str | None:
    """Show ``prompt`` and read one line without blocking the loop.

    Waits on the event loop via ``add_reader``; cancelling the read releases
    stdin immediately.
    Returns None at end of input.
    """
    stream = stream or sys.stdin
    print(prompt, end="", flush=True)
    loop = asyncio.get_running_loop()
    fd = stream.fileno()
    buffer = bytearray()
    while b"\n" not in buffer:
        ready: asyncio.Future = loop.create_future()
        loop.add_reader(fd, _set_ready, ready)
        try:
            await ready
        finally:
            loop.remove_reader(fd)
        chunk = os.read(fd, 1024)
        if not chunk:
            break
        buffer += chunk
    if not buffer:
        return None
    return buffer.decode("utf-8", errors="replace")


def format_device_line(index: int, device: DeviceDescriptor) -> str:
    platform = device.platform_tag or "unknown"
    sdk = f" • {device.sdk_version}" if device.sdk_version else ""
    return f"[{index}]: {device.name} ({device.id}) • {platform}{sdk}"


def print_choices(selection: SelectionContext) -> None:
    echo()
    echo("Connected devices:")
    for index, device in selection.entries():
        echo(format_device_line(index, device))
    echo()


class DevicePicker:
    """Chooses the device a run session launches against.

    The pick is persisted (pick count + timestamp) before ``pick()`` returns,
    so it always happens before the child process is spawned.

    Args:
        registry: Ranked device cache.
        backend: Source of fresh device listings.
        platform_filter: Narrows candidates; None offers everything.
        auto_yes: Take the top-ranked candidate instead of prompting.
        force_refresh: Ignore the cache and fetch a fresh listing.
        interactive: Whether a prompt can be shown. Defaults to stdin being a tty.
        read_line: Prompt reader, injected by tests.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        backend: FlutterBackend,
        platform_filter: PlatformFilter | None = None,
        auto_yes: bool = False,
        force_refresh: bool = False,
        interactive: bool | None = None,
        read_line: ReadLine | None = None,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.platform_filter = platform_filter
        self.auto_yes = auto_yes
        self.force_refresh = force_refresh
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self.read_line = read_line or read_stdin_line
        self._records: dict[str, DeviceRecord] = {}

    async def pick(self) -> DeviceDescriptor | None:
        """Resolve one device, or None when the user quits at the prompt.

        Raises:
            NoDevicesError: Nothing matched the platform filter.
            UsageError: Several candidates, no tty, and no auto-yes.
        """
        self._records = self.registry.load()

        candidates: list[DeviceDescriptor] = []
        from_cache = False
        if self._records and not self.force_refresh:
            cached = [r.descriptor for r in rank_records(self._records.values())]
            candidates = apply_filter(cached, self.platform_filter)
            from_cache = bool(candidates)

        if not from_cache:
            candidates = await self._fetch() or []

        if not candidates:
            raise NoDevicesError(self._no_devices_message())

        if len(candidates) == 1:
            selected: DeviceDescriptor | None = candidates[0]
            logger.debug("Single device detected (%s / %s); using it", selected.name, selected.id)
        elif self.auto_yes:
            selected = candidates[0]
            logger.debug("Auto-selecting top-ranked device %s", selected.id)
        elif not self.interactive:
            raise UsageError(
                "Multiple devices connected but stdin is not a terminal; "
                "specify a device with -d <deviceId>."
            )
        else:
            if from_cache:
                echo(gray('Using cached device list (press "r" to refresh).'))
            selected = await self._prompt(SelectionContext(candidates), from_cache)

        if selected is not None:
            self.registry.record_pick(selected.id, selected)
        return selected

    async def _fetch(self) -> list[DeviceDescriptor] | None:
        """Fetch, merge and save a fresh listing; return filtered, ranked candidates.

        None means the listing itself came back empty.
        """
        result = await self.backend.list_devices()
        if not result.devices:
            return None
        self._records = self.registry.merge_fetched(self._records, result.devices)
        self.registry.save(self._records)
        ranked = rank_candidates(result.devices, self._records)
        return apply_filter(ranked, self.platform_filter)

    def _no_devices_message(self) -> str:
        if self.platform_filter is None:
            return "No devices found."
        return f"No {self.platform_filter.describe()} devices found."

    async def _prompt(self, selection: SelectionContext, from_cache: bool) -> DeviceDescriptor | None:
        print_choices(selection)
        while True:
            line = await self.read_line(PROMPT)
            if line is None:
                return None

            text = line.strip()
            lower = text.lower()
            if lower == "q":
                echo(cyan("\n👋 Quitting..."))
                return None
            if lower == "r":
                echo(cyan("\nRefreshing device list..."))
                await self._refresh(selection, from_cache)
                continue

            if not text or text.isdecimal():
                index = int(text) if text else 1
                if selection.contains_index(index):
                    return selection.device_for_index(index)
                if selection.is_missing_index(index):
                    echo(red(f"Device {index} is no longer available; please choose another device."))
                    continue

            match = selection.match_by_name_or_id(text) if text else None
            if match is not None:
                return match

            echo(red('Invalid selection. Enter a device number or its name/ID, or "q" to quit.'))

    async def _refresh(self, selection: SelectionContext, from_cache: bool) -> None:
        candidates = await self._fetch()
        if candidates is None:
            echo(yellow("No devices detected on refresh."))
            return

        changes = selection.refresh(candidates)
        if not changes.has_changes:
            if not from_cache:
                echo(gray("Device list is unchanged."))
            return

        echo()
        echo(yellow("Device list updated:"))
        print_choices(selection)
