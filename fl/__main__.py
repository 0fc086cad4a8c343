"""Entry point for ``fl`` and ``python -m fl``."""

from __future__ import annotations

import sys

from fl.main import cli


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()
