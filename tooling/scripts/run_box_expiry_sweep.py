"""Expire overdue mystery boxes once.

Intended usage: schedule via cron when the in-process expiry worker is
disabled, or run manually after an outage.

Example:
    python tooling/scripts/run_box_expiry_sweep.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the box expiry sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the sweep run to describe the invocation source.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of boxes loaded per batch.",
    )
    return parser.parse_args()


async def _run(trigger: str, batch_size: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from mysterybox_api.core.settings import settings  # type: ignore import-position
    from mysterybox_api.db.session import async_session  # type: ignore import-position
    from mysterybox_api.workers import BoxExpiryWorker  # type: ignore import-position

    worker = BoxExpiryWorker(
        async_session,  # type: ignore[arg-type]
        batch_size=batch_size or settings.box_expiry_batch_size,
        trigger_label=settings.box_expiry_trigger_label,
    )
    return await worker.run_once(triggered_by=trigger)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.batch_size))
    logger.success(
        "Box expiry sweep completed",
        scanned=summary.get("scanned", 0),
        expired=summary.get("expired", 0),
        failed=summary.get("failed", 0),
        trigger=args.trigger,
    )
    return 0 if summary.get("failed", 0) == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
