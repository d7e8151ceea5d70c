#!/usr/bin/env python3
"""
Orphan Vector Cleanup

Deletes vectors whose document no longer exists in the ledger, e.g. when
a deletion removed the ledger row but the vector store call failed.

Usage:
    $ python scripts/cleanup_orphan_vectors.py --dry-run
    $ python scripts/cleanup_orphan_vectors.py
"""

import argparse
import asyncio
import logging
import sys

from docchat.core.database import dispose_engine
from docchat.core.logging import setup_logging
from docchat.services.vector_store import PgVectorStore

logger = logging.getLogger("docchat.scripts.cleanup_orphan_vectors")


async def cleanup_orphans(store: PgVectorStore, dry_run: bool = False) -> list[str]:
    """Delete the vectors of every orphaned document id; returns those ids."""
    orphaned = await store.orphaned_document_ids()
    if not orphaned:
        logger.info("No orphaned vectors found")
        return []

    for document_id in orphaned:
        count = await store.count({"documentId": document_id})
        if dry_run:
            logger.info("Would delete %d vectors of %s", count, document_id)
            continue
        await store.delete_by_filter({"documentId": document_id})
        logger.info("Deleted %d vectors of %s", count, document_id)

    logger.info(
        "%s %d orphaned document(s)",
        "Found" if dry_run else "Cleaned up",
        len(orphaned),
    )
    return orphaned


async def _run(dry_run: bool) -> None:
    try:
        await cleanup_orphans(PgVectorStore(), dry_run=dry_run)
    finally:
        await dispose_engine()


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete vectors of deleted documents")
    parser.add_argument(
        "--dry-run", action="store_true", help="Only report what would be deleted"
    )
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(_run(args.dry_run))
    except Exception:
        logger.exception("Cleanup failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
