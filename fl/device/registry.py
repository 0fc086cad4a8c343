"""Persistent, ranked, self-pruning registry of known run targets.

The registry is a single JSON file (see ``fl.config.resolve_cache_file``).
Records whose last pick is older than the retention window are dropped when
the file is loaded; there is no background sweep.

Updates are read-merge-write without a file lock. Two ``fl`` invocations
racing on the same cache can lose a pick count increment.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from fl.config import DEFAULT_RETENTION
from fl.models import DeviceCacheState, DeviceDescriptor, DeviceRecord

logger = logging.getLogger("fl.device.registry")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps from older cache files as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rank_records(records: Iterable[DeviceRecord]) -> list[DeviceRecord]:
    """Most-picked first; ties keep their input order (sorted() is stable)."""
    return sorted(records, key=lambda r: -r.pick_count)


def rank_candidates(
    candidates: Iterable[DeviceDescriptor],
    records: Mapping[str, DeviceRecord],
) -> list[DeviceDescriptor]:
    """Order freshly listed descriptors by the pick counts in ``records``."""

    def pick_count(descriptor: DeviceDescriptor) -> int:
        record = records.get(descriptor.id)
        return record.pick_count if record else 0

    return sorted(candidates, key=lambda d: -pick_count(d))


class DeviceRegistry:
    """Loads, merges, and persists ``DeviceRecord`` entries keyed by device id.

    Args:
        cache_file: Where the snapshot lives. None disables persistence;
            ``load()`` then always returns an empty map.
        retention: Records picked longer ago than this are pruned at load time.
        clock: Returns the current time (UTC). Injected by tests.
    """

    def __init__(
        self,
        cache_file: Path | None,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cache_file = cache_file
        self.retention = retention
        self._clock = clock

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    def load(self) -> dict[str, DeviceRecord]:
        """Read the snapshot and drop stale records.

        Never raises. A missing, unreadable, or corrupt file is an empty map.
        A record exactly ``retention`` old is kept; older ones are dropped.
        """
        state = self._read_state()
        now = self._clock()
        kept: dict[str, DeviceRecord] = {}
        for device_id, record in state.devices.items():
            if record.last_picked_at is not None:
                age = now - _as_utc(record.last_picked_at)
                if age > self.retention:
                    logger.debug(
                        "Pruned stale device %s (%s), last picked %d days ago",
                        device_id, record.name, age.days,
                    )
                    continue
            kept[device_id] = record
        return kept

    def merge_fetched(
        self,
        existing: Mapping[str, DeviceRecord],
        fetched: Iterable[DeviceDescriptor],
    ) -> dict[str, DeviceRecord]:
        """Fold a fresh listing into the known records.

        Fetched devices come first, in listing order, so that ranking ties
        follow the listing. Known devices that were not listed are kept after
        them. Pick history is never touched here.
        """
        now = self._clock()
        merged: dict[str, DeviceRecord] = {}
        for descriptor in fetched:
            previous = existing.get(descriptor.id)
            if previous is None:
                merged[descriptor.id] = DeviceRecord.from_descriptor(descriptor, seen_at=now)
                continue
            merged[descriptor.id] = previous.model_copy(update={
                "name": descriptor.name,
                "platform_tag": descriptor.platform_tag,
                "sdk_version": descriptor.sdk_version,
                "last_seen_at": now,
            })

        for device_id, record in existing.items():
            if device_id not in merged:
                merged[device_id] = record
        return merged

    def save(self, records: Mapping[str, DeviceRecord]) -> bool:
        """Write the full snapshot. Failure is logged and reported, not raised."""
        if self.cache_file is None:
            return False
        state = DeviceCacheState(devices=dict(records))
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(state.model_dump_json(indent=2, by_alias=True))
        except OSError as e:
            logger.warning("Failed to write device cache %s: %s", self.cache_file, e)
            return False
        return True

    def record_pick(
        self,
        device_id: str,
        descriptor: DeviceDescriptor | None = None,
    ) -> DeviceRecord | None:
        """Count one launch against ``device_id`` and persist it.

        Re-reads the snapshot first so picks made by other invocations since
        our last load are not overwritten wholesale. When the id is unknown
        and ``descriptor`` is given, a record is created for it.
        """
        records = self.load()
        now = self._clock()
        record = records.get(device_id)
        if record is None:
            if descriptor is None:
                logger.warning("Cannot record pick for unknown device %s", device_id)
                return None
            record = DeviceRecord.from_descriptor(descriptor, seen_at=now)

        record = record.model_copy(update={
            "pick_count": record.pick_count + 1,
            "last_picked_at": now,
        })
        records[device_id] = record
        self.save(records)
        logger.debug("Recorded pick for %s (count=%d)", device_id, record.pick_count)
        return record

    def remove(self, device_id: str) -> bool:
        """Forget one device. Returns whether it was known."""
        records = self.load()
        if records.pop(device_id, None) is None:
            return False
        self.save(records)
        return True

    # ----------------------------------------------------------------
    # Internal helpers
    # ----------------------------------------------------------------

    def _read_state(self) -> DeviceCacheState:
        if self.cache_file is None or not self.cache_file.exists():
            return DeviceCacheState()

        try:
            data = json.loads(self.cache_file.read_text())
            return DeviceCacheState.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable device cache %s: %s", self.cache_file, e)
            return DeviceCacheState()
