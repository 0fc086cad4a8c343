"""``fl pub sort``: alphabetise the dependency sections of pubspec.yaml.

Works on raw lines rather than a YAML round-trip so comments, quoting and
blank lines elsewhere in the file survive untouched. Multi-line entries
(``path:``/``git:`` blocks) move together with their header line.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from fl.terminal import echo, echo_err, gray, green, red

logger = logging.getLogger("fl.tools.pubspec")

PUBSPEC = "pubspec.yaml"
BACKUP_SUFFIX = ".backup"
SORTED_SECTIONS = ("dependencies:", "dev_dependencies:")

_INDENT_RE = re.compile(r"^(\s+)")
_NAME_RE = re.compile(r"^\s*([^:]+):")


@dataclass
class Dependency:
    name: str
    lines: list[str] = field(default_factory=list)


def _indent_of(line: str) -> int | None:
    match = _INDENT_RE.match(line)
    return len(match.group(1)) if match else None


def sort_dependency_section(section: list[str], indent: str) -> list[str]:
    """Sort one section body by package name, case-insensitively.

    A line at ``indent`` containing ``:`` starts an entry; deeper-indented
    lines that follow belong to it. Blank lines inside the body are dropped.
    """
    dependencies: list[Dependency] = []
    i = 0
    while i < len(section):
        line = section[i]
        if not line.strip() or not (line.startswith(indent) and ":" in line):
            i += 1
            continue

        entry = [line]
        j = i + 1
        while j < len(section):
            sub = section[j]
            if not sub.strip():
                j += 1
                break
            depth = _indent_of(sub)
            if depth is not None and depth > len(indent):
                entry.append(sub)
                j += 1
                continue
            break

        match = _NAME_RE.match(line)
        if match:
            dependencies.append(Dependency(match.group(1).strip(), entry))
        i = j

    dependencies.sort(key=lambda d: d.name.lower())
    return [line for dep in dependencies for line in dep.lines]


def sort_pubspec_text(content: str) -> str:
    """Return ``content`` with its dependency sections sorted."""
    result: list[str] = []
    section: list[str] = []
    pending_blank: list[str] = []
    indent = ""
    in_section = False

    def flush() -> None:
        if section:
            result.extend(sort_dependency_section(section, indent))
            section.clear()
        result.extend(pending_blank)
        pending_blank.clear()

    for line in content.split("\n"):
        if line.strip() in SORTED_SECTIONS:
            flush()
            in_section = True
            indent = ""
            result.append(line)
            continue

        if in_section and line and not line.startswith((" ", "\t")):
            flush()
            in_section = False
            result.append(line)
            continue

        if not in_section:
            result.append(line)
            continue

        if line.strip():
            section.extend(pending_blank)
            pending_blank.clear()
            if not section and line.startswith(" "):
                indent = _INDENT_RE.match(line).group(1)
            section.append(line)
        else:
            pending_blank.append(line)

    flush()
    return "\n".join(result)


def sort_pubspec(project_dir: Path, create_backup: bool = False) -> int:
    """Sort ``pubspec.yaml`` in place. Returns a process exit code."""
    pubspec = project_dir / PUBSPEC
    if not pubspec.is_file():
        echo_err(red(f"Error: {PUBSPEC} not found in current directory"))
        return 1

    logger.debug("Reading %s", pubspec)
    try:
        content = pubspec.read_text()
        sorted_content = sort_pubspec_text(content)
        if create_backup:
            backup = pubspec.with_name(PUBSPEC + BACKUP_SUFFIX)
            shutil.copyfile(pubspec, backup)
            logger.debug("Created backup: %s", backup)
        pubspec.write_text(sorted_content)
    except OSError as e:
        echo_err(red(f"Error sorting {PUBSPEC}: {e}"))
        return 1

    echo(green(f"✓ Successfully sorted {PUBSPEC}"))
    if create_backup:
        echo(gray(f"  Backup saved to: {PUBSPEC}{BACKUP_SUFFIX}"))
    return 0
