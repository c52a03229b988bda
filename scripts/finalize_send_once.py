"""
Finalize completed send-once campaigns (one pass).

Intended for cron every 5-15 minutes when the in-process worker is disabled.
Individual campaign failures are reported in the output, not the exit code;
exit 1 means the pass itself could not run.

Usage:
    python scripts/finalize_send_once.py                  # apply
    python scripts/finalize_send_once.py --dry-run        # preview, zero writes
    python scripts/finalize_send_once.py --mode preview --limit 10
    python scripts/finalize_send_once.py --reconcile      # re-run disable step for partial finalizations
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def finalize(mode: str, limit: int | None) -> int:
    from sendonce.database import dispose_engine
    from sendonce.workers.send_once_finalizer import run_once, RunMode

    if mode == RunMode.PREVIEW:
        print("Running in dry-run mode - no changes will be made")

    try:
        summary = await run_once(mode=mode, limit=limit)
    except Exception as e:
        logger.error("Finalizer pass failed: %s", str(e))
        return 1
    finally:
        await dispose_engine()

    for line in summary["lines"]:
        print(line)
    return 0


async def reconcile(preview: bool) -> int:
    from sendonce.database import async_session_factory, dispose_engine
    from sendonce.services.finalizer import reconcile_partial_finalizations

    try:
        async with async_session_factory() as db:
            summary = await reconcile_partial_finalizations(db, preview=preview)
    except Exception as e:
        logger.error("Reconcile failed: %s", str(e))
        return 1
    finally:
        await dispose_engine()

    print(f"Partially finalized campaigns found: {summary['found']}")
    if preview:
        print("Dry run - nothing changed")
    else:
        print(f"Disabled: {len(summary['repaired_ids'])}")
        for campaign_id, error in summary["failed"].items():
            print(f"  - Campaign #{campaign_id}: {error}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Finalize completed send-once campaigns")
    parser.add_argument("--mode", choices=["apply", "preview"], default="apply")
    parser.add_argument("--dry-run", action="store_true", help="Same as --mode preview")
    parser.add_argument("--limit", type=int, default=None, help="Candidate page size (default: SEND_ONCE_BATCH_SIZE)")
    parser.add_argument(
        "--reconcile", action="store_true",
        help="Disable campaigns that have a finalization record but are still published",
    )
    args = parser.parse_args()

    mode = "preview" if args.dry_run else args.mode
    if args.reconcile:
        return asyncio.run(reconcile(preview=mode == "preview"))
    return asyncio.run(finalize(mode, args.limit))


if __name__ == "__main__":
    sys.exit(main())
