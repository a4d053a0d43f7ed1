#!/usr/bin/env python3
"""Clean up expired direct-upload batches.

Usage:
  .venv/bin/python scripts/cleanup_batches.py --dry-run
  .venv/bin/python scripts/cleanup_batches.py --hours 24

By default deletes all batches with expires_at <= now(). Use --dry-run to preview.
"""

from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from blobstore.domain.repositories import BatchRepository
from blobstore.infra.db.session import get_engine


def cleanup_batches(
    *, older_than: timedelta | None = None, dry_run: bool = False
) -> int:
    engine = get_engine()
    now = datetime.now(timezone.utc)
    threshold = now - older_than if older_than else now
    with Session(engine, autoflush=False, autocommit=False) as session:
        repo = BatchRepository(session)
        if dry_run:
            return repo.count_expired(threshold)
        total = repo.delete_expired(threshold)
        session.commit()
        return total


def main() -> None:
    parser = argparse.ArgumentParser(description="Cleanup expired upload batches")
    parser.add_argument(
        "--hours",
        type=int,
        default=None,
        help="Delete batches expired more than N hours ago (default: now)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print would-be deleted batch count without deleting",
    )
    args = parser.parse_args()
    older_than = timedelta(hours=args.hours) if args.hours is not None else None
    count = cleanup_batches(older_than=older_than, dry_run=args.dry_run)
    if args.dry_run:
        print(f"[DRY-RUN] {count} batches would be deleted")
    else:
        print(f"Deleted {count} batches")


if __name__ == "__main__":
    main()
