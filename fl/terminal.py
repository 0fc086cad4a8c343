"""ANSI colour helpers for user-facing terminal output."""

from __future__ import annotations

import sys


def _wrap(code: str, text: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m"


def cyan(text: str) -> str:
    return _wrap("36", text)


def green(text: str) -> str:
    return _wrap("32", text)


def yellow(text: str) -> str:
    return _wrap("33", text)


def red(text: str) -> str:
    return _wrap("31", text)


def gray(text: str) -> str:
    return _wrap("90", text)


def echo(text: str = "") -> None:
    """Print a line to stdout and flush (stdout may be in cbreak mode)."""
    print(text, flush=True)


def echo_err(text: str = "") -> None:
    print(text, file=sys.stderr, flush=True)


KEY_HELP = [
    ("r", "Hot reload (fast refresh)"),
    ("R", "Hot restart (full restart)"),
    ("q", "Quit application"),
    ("h", "Show this help"),
]


def print_session_help() -> None:
    """In-session help shown on ``h``."""
    rule = cyan("=" * 31)
    echo()
    echo(rule)
    echo(cyan("  Available Commands"))
    echo(rule)
    for key, description in KEY_HELP:
        echo(f"  {cyan(key)} - {description}")
    echo(rule)
    echo()
