"""Run configuration: tool command resolution and cache file location."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


logger = logging.getLogger("fl.config")

VERSION = "0.11.0"

CACHE_DIR_ENV = "FL_DEVICE_CACHE_DIR"
CACHE_FILE_NAME = "device-cache.json"

DEFAULT_WATCH_DIR = "lib"
DEFAULT_WATCH_EXTENSION = ".dart"
DEFAULT_DEBOUNCE_SECONDS = 0.5
DEFAULT_RELOAD_COOLDOWN = 1.0
DEFAULT_RESTART_COOLDOWN = 2.0
DEFAULT_RETENTION = timedelta(days=30)

# Platform directory name -> display label
PLATFORM_LABELS: dict[str, str] = {
    "android": "Android",
    "ios": "iOS",
    "windows": "Windows",
    "linux": "Linux",
    "macos": "macOS",
    "web": "Web",
}


@dataclass(frozen=True)
class ToolCommand:
    """The build tool executable plus any fixed prefix arguments.

    ``fvm flutter run`` is ``ToolCommand("fvm", ("flutter",))``.
    """

    executable: str = "flutter"
    prefix: tuple[str, ...] = ()

    def argv(self, *args: str) -> list[str]:
        """Full argv for running the tool with ``args``."""
        return [self.executable, *self.prefix, *args]

    def describe(self, *args: str) -> str:
        return " ".join(self.argv(*args))


def resolve_tool_command(start: Path) -> ToolCommand:
    """Use FVM when the project (or any parent) is pinned to an FVM version."""
    current = start.resolve()
    while True:
        if (
            (current / ".fvm").is_dir()
            or (current / "fvm_config.json").exists()
            or (current / ".fvm" / "fvm_config.json").exists()
        ):
            return ToolCommand("fvm", ("flutter",))
        parent = current.parent
        if parent == current:
            break
        current = parent
    return ToolCommand()


def resolve_cache_dir(env: Mapping[str, str], platform: str = sys.platform) -> Path | None:
    """Pick the directory that holds the device cache.

    Order: ``FL_DEVICE_CACHE_DIR``, then ``%USERPROFILE%/.fl`` on Windows,
    ``$XDG_CACHE_HOME/fl`` or ``$HOME/.cache/fl`` elsewhere.
    Returns None when nothing usable is set.
    """
    override = env.get(CACHE_DIR_ENV)
    if override:
        return Path(override)

    if platform.startswith("win"):
        profile = env.get("USERPROFILE")
        return Path(profile) / ".fl" if profile else None

    xdg = env.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "fl"

    home = env.get("HOME")
    if home:
        return Path(home) / ".cache" / "fl"
    return None


def resolve_cache_file(env: Mapping[str, str], platform: str = sys.platform) -> Path | None:
    directory = resolve_cache_dir(env, platform)
    if directory is None:
        return None
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Device cache disabled, cannot create %s: %s", directory, e)
        return None
    return directory / CACHE_FILE_NAME


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings shared by the supervisor, registry and sources.

    Built once at startup and passed down; nothing reads the environment
    after this.
    """

    project_dir: Path = field(default_factory=Path.cwd)
    tool: ToolCommand = field(default_factory=ToolCommand)
    cache_file: Path | None = None
    watch_dir: str = DEFAULT_WATCH_DIR
    watch_extension: str = DEFAULT_WATCH_EXTENSION
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    reload_cooldown: float = DEFAULT_RELOAD_COOLDOWN
    restart_cooldown: float = DEFAULT_RESTART_COOLDOWN
    retention: timedelta = DEFAULT_RETENTION
    verbose: bool = False

    @classmethod
    def from_environment(
        cls,
        project_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
        verbose: bool = False,
    ) -> RunConfig:
        project_dir = project_dir or Path.cwd()
        env = os.environ if env is None else env
        return cls(
            project_dir=project_dir,
            tool=resolve_tool_command(project_dir),
            cache_file=resolve_cache_file(env),
            verbose=verbose,
        )

    @property
    def watch_path(self) -> Path:
        return self.project_dir / self.watch_dir
