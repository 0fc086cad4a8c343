"""fl command line: global options, command dispatch and exit codes.

Global options must come before the command. Everything after ``run`` or
``flutter`` is passed to the build tool verbatim, apart from the few options
fl itself understands, so these commands are parsed by hand rather than with
argparse. ``devices`` and ``pub sort`` have their own small argparse parsers.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from fl.config import PLATFORM_LABELS, VERSION, RunConfig
from fl.device.flutter import FlutterBackend
from fl.device.picker import DevicePicker, format_device_line
from fl.device.registry import DeviceRegistry, rank_records
from fl.device.selection import resolve_platform_filter
from fl.models import FlError, UsageError
from fl.session.supervisor import SIGNAL_EXIT_CODE, RunSupervisor
from fl.terminal import KEY_HELP, cyan, echo, echo_err, gray, green, red
from fl.tools.passthrough import run_passthrough
from fl.tools.pubspec import sort_pubspec

logger = logging.getLogger("fl.main")

USAGE_EXIT_CODE = 64


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting with 2."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


@dataclass
class GlobalArgs:
    show_help: bool = False
    show_version: bool = False
    verbose: bool = False
    command: str | None = None
    command_args: list[str] = field(default_factory=list)


@dataclass
class RunArgs:
    forwarded: list[str] = field(default_factory=list)
    platform: str | None = None
    auto_yes: bool = False
    refresh_devices: bool = False


def parse_global_args(argv: Sequence[str]) -> GlobalArgs:
    """Split ``argv`` into global options, the command and its arguments."""
    parsed = GlobalArgs()
    args = list(argv)
    index = 0
    while index < len(args):
        current = args[index]
        index += 1
        if current == "--":
            break
        if current in ("-h", "--help"):
            parsed.show_help = True
        elif current == "--version":
            parsed.show_version = True
        elif current in ("-v", "--verbose"):
            parsed.verbose = True
        elif current.startswith("-"):
            raise UsageError(
                f"Unknown global option: {current}\n"
                "Global options must come before the command.\n"
                'Use "fl <command> --help" to see command-specific options.'
            )
        else:
            parsed.command = current
            break
    parsed.command_args = args[index:]
    return parsed


def normalize_platform(raw: str) -> str:
    value = raw.strip().lower()
    if not value:
        raise UsageError("Expected a platform name after --platform.")
    if value not in PLATFORM_LABELS:
        raise UsageError(
            f"Unknown platform: {raw}.\n"
            f"Supported platforms: {', '.join(PLATFORM_LABELS)}."
        )
    return value


def extract_run_args(args: Sequence[str]) -> RunArgs:
    """Pull fl's own ``run`` options out of the forwarded arguments.

    Only arguments before a ``--`` are inspected; the ``--`` itself and
    everything after it are forwarded unchanged.
    """
    result = RunArgs()
    seen_double_dash = False
    index = 0
    while index < len(args):
        current = args[index]
        index += 1

        if seen_double_dash or current == "--":
            seen_double_dash = True
            result.forwarded.append(current)
            continue

        if current == "--platform" or current.startswith("--platform="):
            if result.platform is not None:
                raise UsageError("Multiple --platform arguments are not allowed.")
            if current == "--platform":
                if index >= len(args):
                    raise UsageError("Expected a platform name after --platform.")
                value = args[index]
                index += 1
            else:
                value = current[len("--platform="):]
            result.platform = normalize_platform(value)
        elif current == "--yes":
            result.auto_yes = True
        elif current == "--refresh-devices":
            result.refresh_devices = True
        else:
            result.forwarded.append(current)
    return result


def print_usage() -> None:
    platforms = ", ".join(PLATFORM_LABELS)
    echo("fl - Enhanced Flutter CLI")
    echo()
    echo("Usage: fl [global-options] <command> [command-arguments]")
    echo()
    echo("Global options (must come before command):")
    echo("  -h, --help        Show this help message")
    echo("      --version     Show version information")
    echo("  -v, --verbose     Verbose output")
    echo()
    echo("Commands:")
    echo("  run [flutter args]      Launch Flutter with auto reload/log capture")
    echo(f"      --platform <name>   Restrict device selection to one platform ({platforms})")
    echo("      --yes               Pick the most used device without prompting")
    echo("      --refresh-devices   Ignore the device cache and list devices again")
    echo("  devices                 List remembered devices, most used first")
    echo("      --refresh           Fetch the current device list first")
    echo("      --forget <id>       Remove one device from the cache")
    echo("  flutter <flutter args>  Pass through any command to the Flutter CLI")
    echo("  pub <subcommand>        Pub-related utilities")
    echo("    sort [--create-backup]  Sort dependencies in pubspec.yaml alphabetically")
    echo("  help                    Show this message")
    echo()
    echo("Examples:")
    echo("  fl run                              # Run with defaults")
    echo("  fl run --help                       # Show Flutter run help")
    echo("  fl run --target lib/main_dev.dart   # Run specific target")
    echo("  fl run --platform ios               # Limit selection to iOS devices")
    echo("  fl -v run --target lib/main.dart    # Verbose mode")
    echo("  fl pub sort                         # Sort pubspec.yaml dependencies")
    echo("  fl flutter doctor                   # Run Flutter CLI commands directly")
    echo()
    echo(cyan("Commands during execution:"))
    for key, description in KEY_HELP:
        echo(f"  {key} - {description}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_run(config: RunConfig, args: Sequence[str]) -> int:
    run_args = extract_run_args(args)
    registry = DeviceRegistry(config.cache_file, retention=config.retention)
    picker = DevicePicker(
        registry,
        FlutterBackend(config.tool),
        platform_filter=resolve_platform_filter(config.project_dir, run_args.platform),
        auto_yes=run_args.auto_yes,
        force_refresh=run_args.refresh_devices,
    )
    supervisor = RunSupervisor(config, run_args.forwarded, picker=picker)
    return await supervisor.run()


def _format_pick(record_time: datetime | None) -> str:
    return record_time.strftime("%Y-%m-%d %H:%M") if record_time else "never"


async def cmd_devices(config: RunConfig, args: Sequence[str]) -> int:
    parser = _Parser(prog="fl devices", description="Show or edit the device cache.")
    parser.add_argument("--refresh", action="store_true", help="Fetch the current device list first")
    parser.add_argument("--forget", metavar="ID", default=None, help="Remove one device from the cache")
    opts = parser.parse_args(list(args))

    registry = DeviceRegistry(config.cache_file, retention=config.retention)
    if config.cache_file is None:
        echo(gray("Device cache is disabled (no cache directory)."))

    if opts.forget is not None:
        if registry.remove(opts.forget):
            echo(green(f"✓ Forgot device {opts.forget}"))
            return 0
        echo_err(red(f"Unknown device: {opts.forget}"))
        return 1

    records = registry.load()
    if opts.refresh:
        result = await FlutterBackend(config.tool).list_devices()
        if result.devices:
            records = registry.merge_fetched(records, result.devices)
            registry.save(records)

    if not records:
        echo("No remembered devices.")
        return 0

    echo("Remembered devices:")
    for index, record in enumerate(rank_records(records.values()), start=1):
        echo(
            f"{format_device_line(index, record.descriptor)}"
            + gray(f"  picks: {record.pick_count}, last picked: {_format_pick(record.last_picked_at)}")
        )
    return 0


def cmd_pub(config: RunConfig, args: Sequence[str]) -> int:
    parser = _Parser(prog="fl pub", description="Pub-related utilities.")
    subparsers = parser.add_subparsers(dest="subcommand")
    sort_parser = subparsers.add_parser(
        "sort", help="Sort dependencies in pubspec.yaml alphabetically"
    )
    sort_parser.add_argument(
        "--create-backup", action="store_true",
        help="Create a backup file (pubspec.yaml.backup)",
    )
    opts = parser.parse_args(list(args))

    if opts.subcommand is None:
        raise UsageError("No pub subcommand specified")
    return sort_pubspec(config.project_dir, create_backup=opts.create_backup)


async def dispatch(parsed: GlobalArgs, config: RunConfig) -> int:
    command = parsed.command
    if command == "run":
        return await cmd_run(config, parsed.command_args)
    if command == "devices":
        return await cmd_devices(config, parsed.command_args)
    if command == "flutter":
        return await run_passthrough(config.tool, parsed.command_args, cwd=config.project_dir)
    if command == "pub":
        return cmd_pub(config, parsed.command_args)
    if command == "help":
        print_usage()
        return 0
    raise UsageError(f"Unknown command: {command}")


def cli(argv: Sequence[str] | None = None) -> int:
    """Parse ``argv``, run the command, and return fl's exit code."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        parsed = parse_global_args(argv)
    except UsageError as e:
        echo_err(red(str(e)))
        echo_err()
        print_usage()
        return USAGE_EXIT_CODE

    if parsed.show_version:
        echo(f"fl version {VERSION}")
        return 0

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger.debug("Parsed arguments: %s", parsed)

    if parsed.command is None:
        if not parsed.show_help:
            echo_err(red("No command specified"))
            echo_err()
        print_usage()
        return 0 if parsed.show_help else USAGE_EXIT_CODE

    config = RunConfig.from_environment(verbose=parsed.verbose)
    try:
        return asyncio.run(dispatch(parsed, config))
    except UsageError as e:
        echo_err(red(str(e)))
        echo_err()
        print_usage()
        return e.exit_code
    except FlError as e:
        echo_err(red(str(e)))
        return e.exit_code
    except KeyboardInterrupt:
        return SIGNAL_EXIT_CODE
