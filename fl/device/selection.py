"""Platform filtering and stable prompt numbering for device selection."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from fl.config import PLATFORM_LABELS
from fl.models import DeviceDescriptor

logger = logging.getLogger("fl.device.selection")


@dataclass(frozen=True)
class PlatformFilter:
    """Narrows candidates to the requested platform tokens.

    A device matches when a token is a case-insensitive substring of its
    platform tag. The SDK string is checked too, since desktop targets
    report a host triple such as ``darwin`` and only name the OS there.
    """

    tokens: tuple[str, ...]
    labels: tuple[str, ...] = ()

    @classmethod
    def for_platform(cls, platform: str) -> PlatformFilter:
        token = platform.strip().lower()
        return cls((token,), (PLATFORM_LABELS.get(token, token),))

    def matches(self, device: DeviceDescriptor) -> bool:
        target = (device.platform_tag or "").lower()
        sdk = (device.sdk_version or "").lower()
        return any(token in target or token in sdk for token in self.tokens)

    def apply(self, devices: Iterable[DeviceDescriptor]) -> list[DeviceDescriptor]:
        return [d for d in devices if self.matches(d)]

    def describe(self) -> str:
        labels = list(self.labels) or list(self.tokens)
        if not labels:
            return "detected platforms"
        if len(labels) == 1:
            return labels[0]
        if len(labels) == 2:
            return f"{labels[0]} and {labels[1]}"
        return f"{', '.join(labels[:-1])}, and {labels[-1]}"


def detect_platform_filter(project_dir: Path) -> PlatformFilter | None:
    """Infer requested platforms from the project's platform directories."""
    tokens: list[str] = []
    labels: list[str] = []
    for directory, label in PLATFORM_LABELS.items():
        if (project_dir / directory).is_dir():
            tokens.append(directory)
            labels.append(label)
    if not tokens:
        return None
    return PlatformFilter(tuple(tokens), tuple(labels))


def resolve_platform_filter(project_dir: Path, platform: str | None) -> PlatformFilter | None:
    """An explicit ``--platform`` wins over directory detection."""
    if platform:
        return PlatformFilter.for_platform(platform)
    return detect_platform_filter(project_dir)


def apply_filter(
    devices: list[DeviceDescriptor],
    platform_filter: PlatformFilter | None,
) -> list[DeviceDescriptor]:
    """Filter without ever falling back to the unfiltered list."""
    if platform_filter is None:
        return list(devices)
    filtered = platform_filter.apply(devices)
    if filtered:
        logger.debug(
            "Filtering to %s devices (%d available)", platform_filter.describe(), len(filtered)
        )
    else:
        logger.debug("No devices matched the requested %s platform(s)", platform_filter.describe())
    return filtered


@dataclass
class SelectionChanges:
    """What a refresh did to the numbered prompt."""

    removed_indexes: list[int] = field(default_factory=list)
    added_devices: list[DeviceDescriptor] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.removed_indexes or self.added_devices)


class SelectionContext:
    """Assigns stable 1-based indexes to the devices offered in one prompt.

    On refresh, devices that are still present keep their index, devices that
    vanished retire theirs into a "missing" set (never reused), and new devices
    take the next unused index.
    """

    def __init__(self, devices: Iterable[DeviceDescriptor] = ()) -> None:
        self._slots: dict[int, DeviceDescriptor] = {}
        self._index_by_id: dict[str, int] = {}
        self._missing: set[int] = set()
        self._next_index = 1
        for device in devices:
            self._assign(device)

    def _assign(self, device: DeviceDescriptor) -> None:
        self._slots[self._next_index] = device
        self._index_by_id[device.id] = self._next_index
        self._next_index += 1

    def __len__(self) -> int:
        return len(self._slots)

    def entries(self) -> Iterator[tuple[int, DeviceDescriptor]]:
        """(index, device) pairs in index order."""
        for index in sorted(self._slots):
            yield index, self._slots[index]

    def contains_index(self, index: int) -> bool:
        return index in self._slots

    def device_for_index(self, index: int) -> DeviceDescriptor | None:
        return self._slots.get(index)

    def is_missing_index(self, index: int) -> bool:
        return index in self._missing

    def first(self) -> DeviceDescriptor | None:
        for _, device in self.entries():
            return device
        return None

    def match_by_name_or_id(self, text: str) -> DeviceDescriptor | None:
        candidate = text.strip().lower()
        for _, device in self.entries():
            if device.id.lower() == candidate or device.name.lower() == candidate:
                return device
        return None

    def refresh(self, devices: Iterable[DeviceDescriptor]) -> SelectionChanges:
        devices = list(devices)
        changes = SelectionChanges()
        new_ids = {d.id for d in devices}

        for device_id in [i for i in self._index_by_id if i not in new_ids]:
            index = self._index_by_id.pop(device_id)
            del self._slots[index]
            self._missing.add(index)
            changes.removed_indexes.append(index)

        for device in devices:
            index = self._index_by_id.get(device.id)
            if index is not None:
                self._slots[index] = device
            else:
                self._assign(device)
                changes.added_devices.append(device)

        return changes
