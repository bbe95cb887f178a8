#!/usr/bin/env python
"""Re-queue documents for processing.

Usage:
    python scripts/reprocess.py --document DOC_ID             # One document
    python scripts/reprocess.py --bot BOT_ID                  # Every document of a bot
    python scripts/reprocess.py --bot BOT_ID --failed-only    # Only failed documents
"""
import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from plugrag.db import Database
from plugrag.jobs import JobQueue, enqueue_document
import structlog

logger = structlog.get_logger()


def main():
    """Main entry point for the reprocess script."""
    parser = argparse.ArgumentParser(
        description="Re-queue documents for processing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--document", help="Document id to reprocess")
    target.add_argument("--bot", help="Reprocess the documents of this bot")
    parser.add_argument(
        "--failed-only",
        action="store_true",
        help="With --bot, only documents whose processing failed",
    )
    args = parser.parse_args()

    db = Database()
    db.init_schema()
    queue = JobQueue(db)

    if args.document:
        document = db.get_document(args.document)
        if document is None:
            print(f"\n❌ Document not found: {args.document}\n")
            sys.exit(1)
        documents = [document]
    else:
        documents = db.list_documents(args.bot, status="failed" if args.failed_only else None)
        documents = [d for d in documents if d.status != "deleted"]

    queued = skipped = failed = 0
    for document in documents:
        try:
            if enqueue_document(db, queue, document).created:
                queued += 1
            else:
                skipped += 1
        except Exception as e:
            failed += 1
            logger.error("reprocess_enqueue_failed", document_id=document.id, error=str(e))

    print(f"\n{'=' * 60}")
    print("  Reprocess summary")
    print(f"{'=' * 60}\n")
    print(f"  📄 Documents considered: {len(documents)}")
    print(f"  ✅ Jobs queued:          {queued}")
    print(f"  ⏭️  Already queued:       {skipped}")
    print(f"  ❌ Failed to queue:      {failed}")
    print(f"\n{'=' * 60}\n")

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
