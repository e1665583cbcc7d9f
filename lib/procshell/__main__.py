"""Entry point for children started by Shell.func_cmd.

Usage: python -m procshell <module:attr> [args...]

Imports the FuncRegistry at module:attr and runs the invocation encoded
in PROCSHELL_INVOCATION. The remaining args become sys.argv[1:].
"""

from __future__ import annotations

import logging
import sys

from .registry import load_registry

logger = logging.getLogger("procshell")


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    if not argv:
        print("usage: python -m procshell <module:attr> [args...]", file=sys.stderr)
        sys.exit(2)
    location, rest = argv[0], argv[1:]
    sys.argv = [sys.argv[0], *rest]
    registry = load_registry(location)
    registry.init_main()
    logger.error("no invocation found for %s", location)
    sys.exit(2)


if __name__ == "__main__":
    main()
