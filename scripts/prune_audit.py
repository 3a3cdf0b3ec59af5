from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from unistatus.core.config import get_settings
from unistatus.persistence.db import SessionLocal
from unistatus.services.audit import prune_audit_events


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete audit events past retention")
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (defaults to AUDIT_RETENTION_DAYS)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    days = args.days if args.days is not None else get_settings().audit_retention_days
    before = datetime.now(timezone.utc) - timedelta(days=max(1, int(days)))
    async with SessionLocal() as session:
        deleted = await prune_audit_events(session, before=before)
    print(f"pruned_audit_events={deleted}")
    return 0


def main() -> int:
    return asyncio.run(_run(_build_parser().parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
