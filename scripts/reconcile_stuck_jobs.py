#!/usr/bin/env python3
"""Run one reconciliation sweep over jobs stuck in processing and print the summary."""

from __future__ import annotations

import argparse
import asyncio
import json

from research_tracker.core.config import get_settings
from research_tracker.core.telemetry import configure_logging
from research_tracker.services.repository import build_repository
from research_tracker.workers.main import build_reconciler
from research_tracker.workers.reconciler import SweepSummary


async def run_once(*, max_concurrency: int | None, skip_orphans: bool) -> SweepSummary:
    settings = get_settings()
    repository = build_repository(settings)
    reconciler = build_reconciler(settings, repository)
    if max_concurrency is not None:
        reconciler.max_concurrency = max(1, max_concurrency)
    if skip_orphans:
        reconciler.orphan_pending_after_seconds = 0
    try:
        return await reconciler.sweep()
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile research jobs stuck in processing.")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Override RT_RECONCILE_MAX_CONCURRENCY for this run",
    )
    parser.add_argument(
        "--skip-orphans",
        action="store_true",
        help="Do not delete pending jobs that never received a run id",
    )
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    summary = asyncio.run(run_once(max_concurrency=args.max_concurrency, skip_orphans=args.skip_orphans))
    print(json.dumps(summary.as_dict(), indent=2))


if __name__ == "__main__":
    main()
