from __future__ import annotations

import argparse
import asyncio
import logging

from unistatus.core.logging import configure_logging
from unistatus.services.housekeeping import HousekeepingState, housekeeping_loop, run_housekeeping_cycle
from unistatus.services.monitors.scheduler import run_scheduler_cycle, scheduler_loop


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the monitor scheduler outside the check worker")
    parser.add_argument("--once", action="store_true", help="Run one scheduling and housekeeping cycle, then exit")
    parser.add_argument("--no-housekeeping", action="store_true", help="Only schedule checks")
    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.once:
        summary = await run_scheduler_cycle()
        if summary is None:
            print("scheduler lock held elsewhere; skipped")
        else:
            print(f"scheduled {summary}")
        if not args.no_housekeeping:
            print(f"housekeeping {await run_housekeeping_cycle(HousekeepingState())}")
        return 0
    tasks = [asyncio.create_task(scheduler_loop())]
    if not args.no_housekeeping:
        tasks.append(asyncio.create_task(housekeeping_loop()))
    logger.info("scheduler_started housekeeping=%s", not args.no_housekeeping)
    await asyncio.gather(*tasks)
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_run(_build_parser().parse_args()))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
