"""Classifies single lines of `flutter run` output.

Pure functions: no state, no I/O. The supervisor runs every output line
through these, in order, before echoing it.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

VM_SERVICE_RE = re.compile(
    r"(?:VM\s+Service|Observatory|Dart\s+VM\s+Service).*?(http://\S+)",
    re.IGNORECASE,
)

STARTUP_MARKERS = (
    "Flutter run key commands",
    "An Observatory debugger",
    "A Dart VM Service",
)
RELOAD_MARKERS = ("Reloaded", "reloaded")
RESTART_MARKERS = ("Restarted", "restarted")


def find_vm_service_uri(line: str) -> str | None:
    """Return the VM Service http URI advertised on this line, if any."""
    match = VM_SERVICE_RE.search(line)
    return match.group(1) if match else None


def is_startup_marker(line: str) -> bool:
    return any(marker in line for marker in STARTUP_MARKERS)


def is_reload_marker(line: str) -> bool:
    return any(marker in line for marker in RELOAD_MARKERS)


def is_restart_marker(line: str) -> bool:
    return any(marker in line for marker in RESTART_MARKERS)


def to_websocket_uri(uri: str) -> str:
    """Convert an advertised http(s) VM Service URI to its websocket endpoint.

    ``http://127.0.0.1:50300/abc=/`` becomes ``ws://127.0.0.1:50300/abc=/ws``.
    URIs that already point at a websocket are returned unchanged.
    """
    parts = urlsplit(uri)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path or "/"
    if scheme != parts.scheme and path.endswith("/"):
        path += "ws"
    return urlunsplit((scheme, parts.netloc, path, parts.query, parts.fragment))
