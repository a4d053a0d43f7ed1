#!/usr/bin/env python3
"""Run a mark-and-sweep garbage collection over the blob bucket.

Usage:
  .venv/bin/python scripts/run_gc.py --marked referenced.txt --dry-run
  some-export-command | .venv/bin/python scripts/run_gc.py

The marked file (or stdin) lists one referenced digest per line. Every
digest-shaped object in the bucket that is not listed gets deleted.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Iterable, TextIO

from blobstore.app.services.binary_manager import S3BinaryManager
from blobstore.app.services.garbage_collector import GCStatus
from blobstore.common.config import get_settings
from blobstore.common.logging import setup_logging


def read_digests(stream: TextIO) -> Iterable[str]:
    for raw_line in stream:
        line = raw_line.strip()
        if line and not line.startswith("#"):
            yield line


def run_gc(
    manager: S3BinaryManager, digests: Iterable[str], *, dry_run: bool = False
) -> GCStatus:
    collector = manager.garbage_collector()
    collector.start()
    for digest in digests:
        collector.mark(digest)
    return collector.stop(delete=not dry_run)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Garbage collect unreferenced blobs")
    parser.add_argument(
        "--marked",
        default="-",
        help="File with one referenced digest per line (default: stdin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what would be reclaimed",
    )
    args = parser.parse_args(argv)
    setup_logging()
    manager = S3BinaryManager(get_settings())
    if args.marked == "-":
        status = run_gc(manager, read_digests(sys.stdin), dry_run=args.dry_run)
    else:
        with open(args.marked, encoding="utf-8") as fp:
            status = run_gc(manager, read_digests(fp), dry_run=args.dry_run)
    prefix = "[DRY-RUN] " if args.dry_run else ""
    print(prefix + json.dumps(status.as_dict()))


if __name__ == "__main__":
    main()
