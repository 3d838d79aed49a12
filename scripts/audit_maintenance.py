#!/usr/bin/env python3
"""Operator commands for the audit log.

Usage:
    python scripts/audit_maintenance.py retention-run
    python scripts/audit_maintenance.py retention-stats
    python scripts/audit_maintenance.py policy-show
    python scripts/audit_maintenance.py policy-set --active-days 180 --archive-days 2555
    python scripts/audit_maintenance.py integrity-report --from-seq 1 --to-seq 500
    python scripts/audit_maintenance.py verify-archives
    python scripts/audit_maintenance.py export --format jsonl --output audit.jsonl

Configuration is read from the environment (DATABASE_URL, SHARED_FS_ROOT, ...).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _print(data: Any) -> None:
    print(json.dumps(_jsonable(data), indent=2, default=str))


def _parse_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


async def run_command(args: argparse.Namespace) -> int:
    # Import here to avoid loading config before env vars are set
    from trustcore.service.audit import ExportFormat
    from trustcore.service.runtime import get_runtime
    from trustcore.storage.models import AuditLogFilter

    runtime = get_runtime()
    try:
        if args.command == "retention-run":
            result = await runtime.retention.run_now()
            _print(asdict(result))
            return 0 if result.success else 1

        if args.command == "retention-stats":
            stats = await runtime.retention.get_statistics()
            _print(asdict(stats))
            return 0

        if args.command == "policy-show":
            _print(asdict(await runtime.retention.get_policy()))
            return 0

        if args.command == "policy-set":
            current = await runtime.retention.get_policy()
            changes = {
                "active_retention_days": args.active_days,
                "archive_retention_days": args.archive_days,
                "task_interval_hours": args.interval_hours,
                "max_store_size_bytes": args.max_bytes,
                "notify_address": args.notify,
            }
            for flag in ("auto_archive", "auto_purge", "compress_archive", "encrypt_archive"):
                value = getattr(args, flag)
                if value is not None:
                    changes[flag] = value == "on"
            updated = replace(current, **{k: v for k, v in changes.items() if v is not None})
            _print(asdict(await runtime.retention.update_policy(updated)))
            return 0

        if args.command == "integrity-report":
            if args.from_date or args.to_date:
                report = await runtime.integrity.generate_report_for_period(
                    _parse_date(args.from_date), _parse_date(args.to_date)
                )
            else:
                report = await runtime.integrity.generate_report(args.from_seq, args.to_seq)
            _print({**asdict(report), "all_verified": report.all_verified})
            return 0 if report.all_verified else 2

        if args.command == "verify-archives":
            verification = await runtime.retention.verify_archives()
            _print({**asdict(verification), "ok": verification.ok})
            return 0 if verification.ok else 2

        if args.command == "export":
            payload = await runtime.recorder.export(
                AuditLogFilter(
                    subject_id=args.subject_id,
                    action=args.action,
                    from_date=_parse_date(args.from_date),
                    to_date=_parse_date(args.to_date),
                ),
                ExportFormat(args.format),
            )
            if args.output:
                Path(args.output).write_bytes(payload)
                print(f"Wrote {len(payload)} bytes to {args.output}")
            else:
                sys.stdout.write(payload.decode("utf-8"))
            return 0
    finally:
        await runtime.aclose()
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit log maintenance for Trust Core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("retention-run", help="Run one archive/purge cycle now")
    sub.add_parser("retention-stats", help="Show tier counts and last run")
    sub.add_parser("policy-show", help="Show the effective retention policy")

    policy = sub.add_parser("policy-set", help="Update the retention policy")
    policy.add_argument("--active-days", type=int)
    policy.add_argument("--archive-days", type=int)
    policy.add_argument("--interval-hours", type=int)
    policy.add_argument("--max-bytes", type=int)
    policy.add_argument("--notify", help="Address for run reports")
    for flag in ("auto-archive", "auto-purge", "compress-archive", "encrypt-archive"):
        policy.add_argument(f"--{flag}", choices=("on", "off"))

    report = sub.add_parser("integrity-report", help="Verify the hash chain")
    report.add_argument("--from-seq", type=int, default=1)
    report.add_argument("--to-seq", type=int)
    report.add_argument("--from-date", help="ISO-8601 lower bound")
    report.add_argument("--to-date", help="ISO-8601 upper bound")

    sub.add_parser("verify-archives", help="Re-check archived bundles on disk")

    export = sub.add_parser("export", help="Export matching audit entries")
    export.add_argument("--format", choices=("csv", "json", "jsonl"), default="csv")
    export.add_argument("--output", help="File to write (default: stdout)")
    export.add_argument("--subject-id")
    export.add_argument("--action")
    export.add_argument("--from-date")
    export.add_argument("--to-date")
    return parser


def main():
    args = build_parser().parse_args()
    try:
        code = asyncio.run(run_command(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
