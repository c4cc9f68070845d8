"""Verify stored audit signatures and report tampering.

Exit status: 0 when every checked record verifies, 1 when any record fails
verification, 2 when verification could not run (signing disabled,
unreadable store, invalid arguments).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from datetime import date, datetime
from typing import TextIO

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import configure_logging, get_logger, store_context
from audit_core.db.session import DEFAULT_STORE, StoreRegistry, close_db, init_db
from audit_core.modules.verification.service import (
    RecordCheck,
    SignaturesDisabledError,
    VerificationQueryError,
    VerificationRunner,
    VerificationSelector,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_TAMPERED = 1
EXIT_ERROR = 2


def _percent(value: str) -> int:
    try:
        percent = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("sample must be an integer percentage") from None
    if not 1 <= percent <= 100:
        raise argparse.ArgumentTypeError("sample must be between 1 and 100")
    return percent


def _since(value: str) -> datetime | date:
    try:
        return datetime.fromisoformat(value) if "T" in value else date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date for --since: {value!r}") from None


def _positive(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audit-core verify",
        description="Verify audit record signatures and detect tampering.",
    )
    selector = parser.add_mutually_exclusive_group()
    selector.add_argument("--all", action="store_true", help="Verify every audit record.")
    selector.add_argument("--sample", type=_percent, help="Verify a random sample (1-100 percent).")
    selector.add_argument("--since", type=_since, help="Verify records created since DATE.")
    selector.add_argument("--days", type=_positive, help="Verify records from the last N days.")
    selector.add_argument("--id", type=int, dest="record_id", help="Verify one record by id.")
    selector.add_argument("--uuid", dest="audit_uuid", help="Verify one record by uuid.")
    parser.add_argument(
        "--batch-size",
        type=_positive,
        default=1000,
        help="Records read per batch (default: 1000).",
    )
    parser.add_argument(
        "--detailed",
        action="store_true",
        help="Print a line for every verified record.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON.",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Named store to verify (defaults to audit.connection or the default store).",
    )
    return parser


def selector_from_args(args: argparse.Namespace) -> VerificationSelector:
    if args.record_id is not None:
        return VerificationSelector.by_id(args.record_id)
    if args.audit_uuid:
        return VerificationSelector.by_uuid(args.audit_uuid)
    if args.since is not None:
        return VerificationSelector.since_date(args.since)
    if args.days is not None:
        return VerificationSelector.last_days(args.days)
    if args.sample is not None:
        return VerificationSelector.sample(args.sample)
    return VerificationSelector.all()


async def run(
    args: argparse.Namespace,
    *,
    registry: StoreRegistry,
    settings: Settings,
    stdout: TextIO | None = None,
) -> int:
    out = stdout or sys.stdout
    store = registry.get(args.store or settings.audit.connection or DEFAULT_STORE)
    runner = VerificationRunner(store, settings=settings)
    selector = selector_from_args(args)

    def _detail(check: RecordCheck) -> None:
        status = "OK     " if check.valid else "INVALID"
        print(
            f"{status} #{check.id} {check.audit_uuid} {check.event_type}/{check.action_type} "
            f"{check.created_at}",
            file=out,
        )

    try:
        with store_context(store.name):
            report = await runner.verify(
                selector,
                batch_size=args.batch_size,
                on_record=_detail if args.detailed else None,
            )
    except SignaturesDisabledError:
        print("Audit signatures are disabled in configuration.", file=out)
        return EXIT_ERROR
    except VerificationQueryError as exc:
        print(f"Verification failed: {exc}", file=out)
        return EXIT_ERROR

    if args.json:
        print(json.dumps(report.to_dict(), indent=2), file=out)
    else:
        print(f"Verified {report.checked} audit records ({report.selector}).", file=out)
        print(f"  Valid:    {report.valid_count}", file=out)
        print(f"  Invalid:  {report.invalid_count}", file=out)
        print(f"  Validity: {report.validity_percentage}%", file=out)
        for missing in report.not_found:
            print(f"  Not found: {missing}", file=out)
        if report.tampered:
            print("Potential tampering detected in:", file=out)
            for item in report.invalid_records:
                print(
                    f"  - #{item['id']} {item['uuid']} {item['event_type']}/{item['action_type']} "
                    f"created {item['created_at']}",
                    file=out,
                )

    return EXIT_TAMPERED if report.tampered else EXIT_OK


async def _main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    registry = await init_db(settings)
    try:
        return await run(args, registry=registry, settings=settings)
    except Exception:
        logger.exception("audit_verify_failed")
        return EXIT_ERROR
    finally:
        await close_db()


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(_main(argv))


if __name__ == "__main__":
    raise SystemExit(main())
