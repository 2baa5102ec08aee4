"""
Sync queue worker CLI.

    python -m market_sync.worker            # one batch
    python -m market_sync.worker --watch    # poll forever
    python -m market_sync.worker --drain    # until the queue stays empty
"""
import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from market_sync.core.config import get_settings
from market_sync.core.database import get_db_session_context, pg_engine
from market_sync.core.exceptions import MarketSyncError
from market_sync.core.validators import PROVIDERS
from market_sync.services.sync_processor import process_sync_batch

settings = get_settings()
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m market_sync.worker",
        description="Process market data sync jobs from the queue",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--batch", action="store_true", help="Process one batch and exit (default)")
    mode.add_argument("--watch", action="store_true", help="Keep polling for jobs")
    mode.add_argument(
        "--drain",
        action="store_true",
        help=f"Process until {settings.SYNC_DRAIN_EMPTY_LIMIT} consecutive empty batches",
    )
    parser.add_argument("--provider", choices=PROVIDERS, help="Only process jobs for this provider")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.SYNC_BATCH_SIZE,
        help=f"Jobs per batch (default {settings.SYNC_BATCH_SIZE})",
    )
    parser.add_argument(
        "--delay",
        type=int,
        default=settings.SYNC_WATCH_DELAY_MS,
        help=f"Milliseconds between batches in watch mode (default {settings.SYNC_WATCH_DELAY_MS})",
    )
    return parser


def format_summary(summary: Dict[str, Any]) -> str:
    lines = [
        f"Processed: {summary['processed']}  Successful: {summary['successful']}  "
        f"Failed: {summary['failed']}  Recovered: {summary.get('recovered', 0)}"
    ]
    for error in summary["errors"]:
        lines.append(f"  - job {error['jobId']} {error['styleId']}/{error['provider']}: {error['error']}")
    return "\n".join(lines)


async def run_batches(
    mode: str,
    limit: int,
    provider: Optional[str],
    delay_ms: int,
    max_batches: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Run batches in batch, watch or drain mode.

    Args:
        mode: batch | watch | drain
        max_batches: Stop after this many batches (watch mode runs forever otherwise)

    Returns:
        Batch summaries in order
    """
    summaries: List[Dict[str, Any]] = []
    empty_batches = 0

    while True:
        summary = await process_sync_batch(
            limit=limit,
            provider=provider,
            session_scope=get_db_session_context,
        )
        summaries.append(summary)
        print(format_summary(summary), flush=True)

        if mode == "batch" or (max_batches and len(summaries) >= max_batches):
            break

        if mode == "drain":
            empty_batches = empty_batches + 1 if summary["processed"] == 0 else 0
            if empty_batches >= settings.SYNC_DRAIN_EMPTY_LIMIT:
                print(f"Queue empty for {empty_batches} batches, exiting", flush=True)
                break
            if summary["processed"]:
                continue

        await asyncio.sleep(delay_ms / 1000)

    return summaries


async def _main(args: argparse.Namespace) -> None:
    mode = "watch" if args.watch else "drain" if args.drain else "batch"
    logger.info(f"Sync worker starting: mode={mode} provider={args.provider or 'all'} limit={args.limit}")
    try:
        await run_batches(mode, args.limit, args.provider, args.delay)
    finally:
        await pg_engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.limit < 1:
        print("--limit must be at least 1", file=sys.stderr)
        return 2

    try:
        asyncio.run(_main(args))
    except KeyboardInterrupt:
        print("Interrupted", flush=True)
        return 130
    except (MarketSyncError, SQLAlchemyError) as e:
        logger.error(f"Sync worker failed: {e}", exc_info=True)
        print(f"Fatal: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
