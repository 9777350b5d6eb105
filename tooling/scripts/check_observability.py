#!/usr/bin/env python3
"""Quick health check for the mystery box API observability endpoints.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-api.example.com \
        --api-key "$INTERNAL_API_KEY"

The script validates:
  * Readiness: the database answers and the expiry worker is not stuck starting.
  * Box counters: misconfigured catalog rolls, exhausted conflict retries and
    failed expiry rows stay within thresholds.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mystery box observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the mystery box API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Internal API key (required for the box observability endpoint).",
    )
    parser.add_argument(
        "--max-misconfigured",
        type=int,
        default=0,
        help="Maximum allowed purchases/opens refused for misconfigured probabilities (default: 0).",
    )
    parser.add_argument(
        "--max-conflicts",
        type=int,
        default=5,
        help="Maximum allowed atomic units that exhausted their conflict retries (default: 5).",
    )
    parser.add_argument(
        "--max-sweep-failures",
        type=int,
        default=0,
        help="Maximum allowed boxes the expiry sweep failed to transition (default: 0).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] FAIL {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] OK {message}")


async def validate_readiness(client: httpx.AsyncClient) -> None:
    payload = await _get_json(client, "/api/v1/readyz")
    components = payload.get("components", {})
    database = components.get("database", {})
    if database.get("status") != "ready":
        _fail(f"Database not ready: {database.get('detail') or 'unknown error'}")

    worker = components.get("box_expiry_worker", {})
    if worker.get("status") == "starting":
        _fail(f"Box expiry worker enabled but not running ({worker.get('detail')})")

    _log_ok(f"Readiness OK (status={payload.get('status')}, expiry_worker={worker.get('status')})")


async def validate_boxes(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_misconfigured: int,
    max_conflicts: int,
    max_sweep_failures: int,
) -> None:
    if not api_key:
        _log_ok("Skipping box observability (no API key provided)")
        return

    payload = await _get_json(
        client,
        "/api/v1/observability/boxes",
        headers={"X-API-Key": api_key},
    )
    failures = payload.get("failures", {}) or {}
    sweeps = payload.get("sweeps", {}) or {}

    misconfigured = sum(
        int(count) for key, count in failures.items() if key.endswith(":catalog_misconfigured")
    )
    conflicts = sum(int(count) for key, count in failures.items() if key.endswith(":transient_conflict"))
    sweep_failures = int(sweeps.get("failed", 0))

    if misconfigured > max_misconfigured:
        _fail(f"Misconfigured catalog rolls {misconfigured} exceed threshold {max_misconfigured}")
    if conflicts > max_conflicts:
        _fail(f"Exhausted conflict retries {conflicts} exceed threshold {max_conflicts}")
    if sweep_failures > max_sweep_failures:
        _fail(f"Expiry sweep failures {sweep_failures} exceed threshold {max_sweep_failures}")

    purchases = sum(int(count) for count in (payload.get("purchases", {}).get("by_tier", {}) or {}).values())
    opens = sum(int(count) for count in (payload.get("opens", {}).get("by_rarity", {}) or {}).values())
    _log_ok(
        f"Box observability OK (purchases={purchases}, opens={opens}, "
        f"misconfigured={misconfigured}, conflicts={conflicts}, sweep_failures={sweep_failures})"
    )


async def main() -> None:
    args = parse_args()

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        await validate_readiness(client)
        await validate_boxes(
            client,
            api_key=args.api_key,
            max_misconfigured=args.max_misconfigured,
            max_conflicts=args.max_conflicts,
            max_sweep_failures=args.max_sweep_failures,
        )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except Exception as exc:  # pragma: no cover - best-effort logging
        _fail(f"Unexpected error: {exc}")
