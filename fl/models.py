"""Core data models for devices, the device cache, and error types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class FlError(Exception):
    """Base class for errors raised by fl."""

    exit_code: int = 1


class UsageError(FlError):
    """Malformed invocation. The session never starts."""

    exit_code = 64


class NoDevicesError(FlError):
    """No device survived the platform filter."""

    exit_code = 1


class ToolError(FlError):
    """The underlying build tool could not be run or returned an error."""

    def __init__(self, message: str, tool: str = "flutter") -> None:
        super().__init__(message)
        self.tool = tool


class BridgeError(FlError):
    """A VM Service request failed or the connection went away."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceDescriptor(BaseModel):
    """Identity and attributes of a selectable run target, as reported by
    ``flutter devices --machine``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    platform_tag: str | None = Field(default=None, alias="targetPlatform")
    sdk_version: str | None = Field(default=None, alias="sdk")


class DeviceRecord(BaseModel):
    """A descriptor plus usage-ranking metadata, persisted across sessions.

    Stored flat so the cache file reads
    ``{"id", "name", "targetPlatform", "sdk", "pickCount", "lastPickedAt", "lastSeenAt"}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    platform_tag: str | None = Field(default=None, alias="targetPlatform")
    sdk_version: str | None = Field(default=None, alias="sdk")
    pick_count: int = Field(default=0, ge=0, alias="pickCount")
    last_picked_at: datetime | None = Field(default=None, alias="lastPickedAt")
    last_seen_at: datetime = Field(alias="lastSeenAt")

    @property
    def descriptor(self) -> DeviceDescriptor:
        return DeviceDescriptor(
            id=self.id,
            name=self.name,
            platform_tag=self.platform_tag,
            sdk_version=self.sdk_version,
        )

    @classmethod
    def from_descriptor(cls, descriptor: DeviceDescriptor, seen_at: datetime) -> DeviceRecord:
        return cls(
            id=descriptor.id,
            name=descriptor.name,
            platform_tag=descriptor.platform_tag,
            sdk_version=descriptor.sdk_version,
            pick_count=0,
            last_picked_at=None,
            last_seen_at=seen_at,
        )


class DeviceCacheState(BaseModel):
    """On-disk shape of the device cache file."""

    devices: dict[str, DeviceRecord] = Field(default_factory=dict)


@dataclass(frozen=True)
class DecodeFailure:
    """A device listing entry that could not be turned into a descriptor."""

    raw: str
    reason: str


@dataclass
class ListingResult:
    """Outcome of one device listing fetch."""

    devices: list[DeviceDescriptor] = field(default_factory=list)
    failures: list[DecodeFailure] = field(default_factory=list)
