"""RunSupervisor — owns one `flutter run` child process for a session.

All event sources (child output, keyboard, file watcher, signals, VM Service
bridge) push typed events onto a single asyncio.Queue. The supervisor handles
them one at a time, so handlers never interleave and need no locking.

State machine::

    IDLE -> LAUNCHING -> RUNNING <-> RELOADING -> TERMINATING -> TERMINATED

Teardown runs once, whichever of child exit, quit key or signal gets there
first: watcher, debounce timer, bridge, then the child process.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Sequence

from fl.config import RunConfig
from fl.device.picker import DevicePicker
from fl.models import ToolError
from fl.processing.classifier import (
    find_vm_service_uri,
    is_reload_marker,
    is_restart_marker,
    is_startup_marker,
)
from fl.session.events import (
    BridgeLine,
    KeyPressed,
    OutputLine,
    ProcessExited,
    ReloadRequested,
    SessionEvent,
    SignalReceived,
)
from fl.session.guard import ReloadGuard
from fl.sources import BaseSource
from fl.sources.keyboard import KeyboardSource
from fl.sources.process_output import ProcessOutputSource
from fl.sources.signals import SignalSource
from fl.sources.vm_service import VmServiceBridge
from fl.sources.watcher import ChangeWatcherSource
from fl.terminal import cyan, echo, gray, green, print_session_help, red, yellow

logger = logging.getLogger("fl.session.supervisor")

SIGNAL_EXIT_CODE = 130
# Child output lines can be long (stack traces, JSON); raise the reader limit.
STREAM_LIMIT = 1024 * 1024


class SessionState(str, enum.Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    RELOADING = "reloading"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


def has_device_flag(args: Sequence[str]) -> bool:
    """True when the forwarded args already pick a device."""
    for arg in args:
        if arg in ("-d", "--device-id"):
            return True
        if arg.startswith("-d") and len(arg) > 2:
            return True
        if arg.startswith("--device-id="):
            return True
    return False


Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]
BridgeFactory = Callable[..., VmServiceBridge]


class RunSupervisor:
    """Coordinates device selection, the child process and every event source.

    Args:
        config: Immutable run settings.
        forwarded_args: Arguments appended verbatim to ``flutter run``.
        picker: Resolves the device when no ``-d`` was forwarded.
        spawn: Starts the child; defaults to ``asyncio.create_subprocess_exec``.
        keyboard, signals, watcher: Event sources, replaceable in tests.
        bridge_factory: Builds the VM Service bridge for a discovered URI.
        guard: Single-flight reload/restart guard.
    """

    def __init__(
        self,
        config: RunConfig,
        forwarded_args: Sequence[str] = (),
        picker: DevicePicker | None = None,
        spawn: Spawner = asyncio.create_subprocess_exec,
        keyboard: BaseSource | None = None,
        signals: BaseSource | None = None,
        watcher: ChangeWatcherSource | None = None,
        bridge_factory: BridgeFactory = VmServiceBridge,
        guard: ReloadGuard | None = None,
    ) -> None:
        self.config = config
        self.forwarded_args = list(forwarded_args)
        self.picker = picker
        self._spawn = spawn
        self.queue: asyncio.Queue[SessionEvent] = asyncio.Queue()

        self.keyboard = keyboard or KeyboardSource(on_event=self.queue.put_nowait)
        self.signals = signals or SignalSource(on_event=self.queue.put_nowait)
        self.watcher = watcher or ChangeWatcherSource(
            config.watch_path,
            extension=config.watch_extension,
            debounce_seconds=config.debounce_seconds,
            on_event=self.queue.put_nowait,
        )
        self._bridge_factory = bridge_factory
        self.guard = guard or ReloadGuard()

        self.state = SessionState.IDLE
        self.app_started = False
        self.vm_service_uri: str | None = None
        self.bridge: VmServiceBridge | None = None
        self.process: asyncio.subprocess.Process | None = None
        self.output: ProcessOutputSource | None = None
        self._cleanup_started = False
        self._exit_code: int | None = None
        self._guard_timer: asyncio.TimerHandle | None = None
        self._bridge_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Resolve a device, launch, and pump events until teardown.

        Returns the process exit code for fl itself. Raises UsageError,
        NoDevicesError or ToolError before anything is launched.
        """
        echo(cyan("🚀 Starting Flutter with enhanced features..."))

        device_id: str | None = None
        if has_device_flag(self.forwarded_args):
            logger.debug("Device flag already provided; skipping device selection")
        elif self.picker is not None:
            device = await self.picker.pick()
            if device is None:
                return 0
            device_id = device.id

        await self.launch(device_id)
        await self.signals.start()
        await self.keyboard.start()

        try:
            while self._exit_code is None:
                event = await self.queue.get()
                await self.handle_event(event)
        finally:
            await self.teardown()
        return self._exit_code

    async def launch(self, device_id: str | None) -> None:
        args = ["run"]
        if device_id is not None:
            args += ["-d", device_id]
        args += self.forwarded_args
        argv = self.config.tool.argv(*args)

        self.state = SessionState.LAUNCHING
        logger.debug("Running: %s", " ".join(argv))
        try:
            self.process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.config.project_dir),
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            self.state = SessionState.TERMINATED
            raise ToolError(
                f"{self.config.tool.executable} not found on PATH",
                tool=self.config.tool.executable,
            )

        self.output = ProcessOutputSource(self.process, on_event=self.queue.put_nowait)
        await self.output.start()

    async def teardown(self) -> None:
        """Release every resource in order. Safe to call more than once."""
        if self._cleanup_started:
            return
        self._cleanup_started = True
        self.state = SessionState.TERMINATING

        await self.signals.stop()
        await self.watcher.stop()
        if self._guard_timer is not None:
            self._guard_timer.cancel()
            self._guard_timer = None
        if self._bridge_task is not None and not self._bridge_task.done():
            self._bridge_task.cancel()
            try:
                await self._bridge_task
            except asyncio.CancelledError:
                pass
        self._bridge_task = None
        if self.bridge is not None:
            await self.bridge.stop()
        await self.keyboard.stop()

        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Child process did not exit after kill")
        if self.output is not None:
            await self.output.stop()

        self.state = SessionState.TERMINATED
        logger.debug("Session torn down")

    def _finish(self, code: int) -> None:
        if self._exit_code is None:
            self._exit_code = code

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: SessionEvent) -> None:
        if self._cleanup_started:
            return
        if isinstance(event, OutputLine):
            await self.on_output_line(event.text)
        elif isinstance(event, KeyPressed):
            await self.on_key(event.key)
        elif isinstance(event, ReloadRequested):
            await self.on_reload_requested(event.path)
        elif isinstance(event, BridgeLine):
            self.on_bridge_line(event)
        elif isinstance(event, SignalReceived):
            echo(cyan("\n👋 Received Ctrl+C; cleaning up..."))
            await self.teardown()
            self._finish(SIGNAL_EXIT_CODE)
        elif isinstance(event, ProcessExited):
            logger.debug("Child exited with code %s", event.code)
            await self.teardown()
            self._finish(event.code)

    async def on_output_line(self, line: str) -> None:
        if not line:
            return
        echo(line)

        uri = find_vm_service_uri(line)
        if uri is not None:
            self.vm_service_uri = uri
            logger.debug("Found VM Service URI: %s", uri)
            self.connect_bridge()

        if is_startup_marker(line) and not self.app_started:
            await self.on_app_started()

        if is_reload_marker(line):
            echo(green("✓ Hot reload complete"))
        if is_restart_marker(line):
            echo(green("✓ Hot restart complete"))

    async def on_app_started(self) -> None:
        self.app_started = True
        self.state = SessionState.RUNNING
        echo(green("✓ App started successfully"))
        echo(cyan("Commands: r=reload, R=restart, q=quit, h=help"))

        await self.watcher.start()
        if self.watcher.is_running:
            echo(gray(f"👀 Watching for file changes in {self.config.watch_dir}/..."))
        else:
            echo(yellow(f"Warning: {self.config.watch_dir} directory not found"))

        if self.vm_service_uri is not None and self.bridge is None:
            logger.debug("Attempting VM Service connection (fallback)")
            self.connect_bridge()

    def connect_bridge(self) -> None:
        """Open the VM Service bridge in the background.

        Only the first attempt per session counts. The connection runs as its
        own task; events keep flowing while it is pending.
        """
        if self.bridge is not None or self.vm_service_uri is None:
            return
        self.bridge = self._bridge_factory(self.vm_service_uri, on_event=self.queue.put_nowait)
        self._bridge_task = asyncio.create_task(self._open_bridge(self.bridge))

    async def _open_bridge(self, bridge: BaseSource) -> None:
        await bridge.start()
        if self._cleanup_started:
            return
        if bridge.is_running:
            echo(green("✓ Connected to VM Service for enhanced logging"))
        else:
            echo(red(f"Failed to connect to VM Service: {bridge.error}"))
            logger.debug("Enhanced logging will not be available")

    def on_bridge_line(self, event: BridgeLine) -> None:
        if event.kind == "stderr":
            echo(red(event.text))
        elif event.kind == "log":
            echo(yellow(event.text))
        else:
            echo(event.text)

    async def on_key(self, key: str) -> None:
        if key == "r":
            if not self.app_started:
                echo(yellow("⏳ Waiting for app to start..."))
                return
            await self.hot_reload()
        elif key == "R":
            if not self.app_started:
                echo(yellow("⏳ Waiting for app to start..."))
                return
            await self.hot_restart()
        elif key in ("q", "Q"):
            echo(cyan("\n👋 Quitting..."))
            if self._child_alive():
                try:
                    await self._write_to_child("q")
                    return
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.debug("Could not forward quit to child: %s", e)
            await self.teardown()
            self._finish(0)
        elif key in ("h", "H"):
            print_session_help()

    async def on_reload_requested(self, path: str) -> None:
        if not self.app_started or self.guard.is_busy:
            logger.debug("Dropping reload for %s", path)
            return
        echo(cyan(f"📝 File changed: {path.rsplit('/', 1)[-1]}"))
        await self.hot_reload()

    # ------------------------------------------------------------------
    # Reload / restart
    # ------------------------------------------------------------------

    async def hot_reload(self) -> bool:
        return await self._throttled("r", self.config.reload_cooldown, "🔥 Hot reload...", "Hot reload")

    async def hot_restart(self) -> bool:
        return await self._throttled("R", self.config.restart_cooldown, "🔄 Hot restart...", "Hot restart")

    async def _throttled(self, key: str, cooldown: float, banner: str, label: str) -> bool:
        """Write ``key`` to the child under the single-flight guard.

        Returns False when the request was dropped.
        """
        if not self.app_started or not self._child_alive():
            return False
        if not self.guard.try_acquire(cooldown):
            logger.debug("%s dropped, another reload is in flight", label)
            return False

        # A timer left from an earlier cool-down must not release this one
        if self._guard_timer is not None:
            self._guard_timer.cancel()
            self._guard_timer = None
        self.state = SessionState.RELOADING
        echo(cyan(banner))
        try:
            await self._write_to_child(key)
        except (BrokenPipeError, ConnectionResetError) as e:
            echo(red(f"{label} failed: {e}"))
            self.guard.release()
            self.state = SessionState.RUNNING
            return False

        loop = asyncio.get_running_loop()
        self._guard_timer = loop.call_later(cooldown, self._end_reload)
        return True

    def _end_reload(self) -> None:
        self._guard_timer = None
        self.guard.release()
        if self.state is SessionState.RELOADING:
            self.state = SessionState.RUNNING

    def _child_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def _write_to_child(self, data: str) -> None:
        if self.process is None or self.process.stdin is None:
            raise BrokenPipeError("child process has no stdin")
        self.process.stdin.write(data.encode())
        await self.process.stdin.drain()
