"""Delete aged history and audit records according to retention policy."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from typing import TextIO

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import configure_logging, get_logger
from audit_core.db.session import DEFAULT_STORE, StoreRegistry, close_db, init_db
from audit_core.modules.retention.service import (
    AuditConfirmation,
    AuditDeletionRefusedError,
    CleanupResult,
    RetentionManager,
)

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audit-core cleanup",
        description="Clean up old audit and history records based on retention policy.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting anything.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Delete without interactive confirmation.",
    )
    parser.add_argument(
        "--history-only",
        action="store_true",
        help="Only clean up history records; leave audit records untouched.",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Override the configured retention days.",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Named store to clean (defaults to audit.connection or the default store).",
    )
    return parser


class _Console:
    """Prompts and output for the interactive confirmations."""

    def __init__(self, stdin: TextIO, stdout: TextIO) -> None:
        self._stdin = stdin
        self._stdout = stdout

    def line(self, text: str = "") -> None:
        print(text, file=self._stdout)

    def prompt(self, question: str) -> str:
        self._stdout.write(f"{question}: ")
        self._stdout.flush()
        return self._stdin.readline().rstrip("\n")

    def confirm(self, question: str) -> bool:
        return self.prompt(f"{question} [y/N]").strip().lower() in ("y", "yes")


def _report(console: _Console, result: CleanupResult, *, dry_run: bool) -> None:
    label = "History" if result.target == "history" else "Audit"
    if result.status == "skipped":
        console.line(f"{label} retention not configured; records are kept forever.")
        return

    cutoff = result.cutoff.strftime("%Y-%m-%d %H:%M:%S") if result.cutoff else "?"
    console.line(f"{label} retention: {result.retention_days} days (cutoff: {cutoff})")
    if result.target == "audit":
        console.line("Rollback and system event audit records are always retained.")

    if dry_run:
        console.line(f"Would delete {result.count} {label.lower()} records.")
        for row in result.sample:
            details = ", ".join(f"{key}={value}" for key, value in row.items())
            console.line(f"  - {details}")
        if result.count > len(result.sample):
            console.line(f"  ... and {result.count - len(result.sample)} more")
    elif result.status == "cancelled":
        console.line(f"{label} cleanup cancelled.")
    elif result.count == 0:
        console.line(f"No {label.lower()} records to clean up.")
    else:
        console.line(f"Deleted {result.count} {label.lower()} records.")


async def run(
    args: argparse.Namespace,
    *,
    registry: StoreRegistry,
    settings: Settings,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    console = _Console(stdin or sys.stdin, stdout or sys.stdout)
    store = registry.get(args.store or settings.audit.connection or DEFAULT_STORE)
    manager = RetentionManager(store, settings)

    if args.dry_run:
        console.line("DRY RUN MODE - No records will be deleted")

    if settings.history.enabled:
        history = await manager.cleanup_history(
            args.days,
            dry_run=args.dry_run,
            confirm=None if args.force else console.confirm,
        )
        _report(console, history, dry_run=args.dry_run)

    if not args.history_only:
        confirmation = AuditConfirmation(confirm=console.confirm, prompt=console.prompt)
        try:
            audit = await manager.cleanup_audit(
                args.days,
                dry_run=args.dry_run,
                force=args.force,
                confirmation=confirmation,
            )
        except AuditDeletionRefusedError as exc:
            console.line(str(exc))
        else:
            _report(console, audit, dry_run=args.dry_run)

    console.line("Cleanup completed.")
    return 0


async def _main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    registry = await init_db(settings)
    try:
        return await run(args, registry=registry, settings=settings)
    except Exception:
        logger.exception("audit_cleanup_failed")
        return 1
    finally:
        await close_db()


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(_main(argv))


if __name__ == "__main__":
    raise SystemExit(main())
