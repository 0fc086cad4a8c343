"""FlutterBackend — async wrapper around ``flutter devices --machine``."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fl.config import ToolCommand
from fl.models import DecodeFailure, DeviceDescriptor, ListingResult, ToolError

logger = logging.getLogger("fl.device.flutter")


def _descriptor_from_mapping(data: dict[str, Any]) -> DeviceDescriptor | DecodeFailure:
    """Decode one device object. Only ``id`` and ``name`` are required."""
    device_id = data.get("id")
    name = data.get("name")
    if device_id is None or name is None:
        return DecodeFailure(raw=json.dumps(data), reason="missing id or name")

    platform = data.get("targetPlatform")
    sdk = data.get("sdk")
    return DeviceDescriptor(
        id=str(device_id),
        name=str(name),
        platform_tag=str(platform) if platform is not None else None,
        sdk_version=str(sdk) if sdk is not None else None,
    )


def extract_devices(decoded: Any) -> list[DeviceDescriptor | DecodeFailure]:
    """Pull device entries out of a decoded listing document.

    Accepts a list of device objects, ``{"devices": [...]}``,
    ``{"device": {...}}`` or a bare device object. Anything else yields nothing.
    """
    if isinstance(decoded, list):
        entries = decoded
    elif isinstance(decoded, dict):
        if isinstance(decoded.get("devices"), list):
            entries = decoded["devices"]
        elif isinstance(decoded.get("device"), dict):
            entries = [decoded["device"]]
        else:
            entries = [decoded]
    else:
        return []

    results: list[DeviceDescriptor | DecodeFailure] = []
    for entry in entries:
        if isinstance(entry, dict):
            results.append(_descriptor_from_mapping(entry))
        else:
            results.append(DecodeFailure(raw=json.dumps(entry), reason="not an object"))
    return results


def parse_device_listing(output: str) -> ListingResult:
    """Parse machine-readable device output into descriptors and failures.

    Tries the whole output as one JSON document first, then falls back to
    one JSON document per line. Malformed lines are collected as failures.
    """
    result = ListingResult()
    text = output.strip()
    if not text:
        return result

    try:
        decoded_docs = [json.loads(text)]
    except json.JSONDecodeError:
        decoded_docs = []
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                decoded_docs.append(json.loads(stripped))
            except json.JSONDecodeError as e:
                result.failures.append(DecodeFailure(raw=stripped, reason=str(e)))

    for decoded in decoded_docs:
        for item in extract_devices(decoded):
            if isinstance(item, DecodeFailure):
                result.failures.append(item)
            else:
                result.devices.append(item)
    return result


class FlutterBackend:
    """Enumerates run targets via the build tool's machine-readable listing."""

    def __init__(self, tool: ToolCommand) -> None:
        self.tool = tool

    async def _run_tool(self, *args: str) -> tuple[str, str]:
        """Run the tool and return (stdout, stderr).

        Raises ToolError on spawn failure or non-zero exit code.
        """
        argv = self.tool.argv(*args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ToolError(f"{self.tool.executable} not found on PATH", tool=self.tool.executable)

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ToolError(
                f"{args[0]} failed: {stderr.decode(errors='replace').strip()}",
                tool=self.tool.executable,
            )
        return stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def list_devices(self) -> ListingResult:
        """Fetch the current device listing.

        Never raises: tool failures produce an empty result and a warning.
        """
        try:
            stdout, _ = await self._run_tool("devices", "--machine")
        except ToolError as e:
            logger.warning("Failed to list devices: %s", e)
            return ListingResult()

        result = parse_device_listing(stdout)
        for failure in result.failures:
            logger.warning("Skipping malformed device entry (%s): %s", failure.reason, failure.raw)
        logger.debug("Device listing returned %d device(s)", len(result.devices))
        return result
