"""Command dispatcher: ``python -m audit_core {cleanup,verify} [options]``."""

from __future__ import annotations

import sys
from collections.abc import Sequence

from audit_core.commands import cleanup, verify

COMMANDS = {
    "cleanup": cleanup.main,
    "verify": verify.main,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] not in COMMANDS:
        names = ", ".join(sorted(COMMANDS))
        print(f"usage: audit-core {{{names}}} [options]", file=sys.stderr)
        return 2
    return COMMANDS[args[0]](args[1:])


if __name__ == "__main__":
    raise SystemExit(main())
