#!/usr/bin/env python
"""Run the document processing worker.

Usage:
    python scripts/run_worker.py                    # Defaults from config
    python scripts/run_worker.py --concurrency 2    # At most 2 jobs at once
    python scripts/run_worker.py --rate 5           # At most 5 job starts per second
    python scripts/run_worker.py --once             # Drain runnable jobs, then exit
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from plugrag import config
from plugrag.log import configure_logging
from plugrag.services import build_services
import structlog

logger = structlog.get_logger()


async def main():
    """Main entry point for the worker script."""
    parser = argparse.ArgumentParser(
        description="Process queued documents into vector collections",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--concurrency",
        type=int,
        default=config.WORKER_CONCURRENCY,
        help=f"Maximum jobs processed at once (default: {config.WORKER_CONCURRENCY})",
    )

    parser.add_argument(
        "--rate",
        type=int,
        default=config.WORKER_RATE_MAX,
        help=f"Maximum job starts per {config.WORKER_RATE_PERIOD:g}s (default: {config.WORKER_RATE_MAX})",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Process the jobs that are runnable now, then exit",
    )

    args = parser.parse_args()
    configure_logging()

    services = build_services()
    worker = services.create_worker(concurrency=args.concurrency, rate=args.rate)

    # Stop claiming on SIGTERM/SIGINT; in-flight jobs are allowed to finish
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_stop)

    print(f"\n🚀 Worker started (concurrency={args.concurrency}, rate={args.rate}/s)")
    print(f"   Database: {services.db.path}")
    print("   Press Ctrl+C to stop after in-flight jobs finish.\n")

    try:
        if args.once:
            await worker.run_until_empty()
        else:
            await worker.run()
        await services.orchestrator.drain_usage()

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("worker_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    metrics = services.queue.metrics()
    print(f"\n✅ Worker stopped. Jobs: {metrics}\n")


if __name__ == "__main__":
    asyncio.run(main())
