#!/usr/bin/env python3
"""Repair archive blobs, knowledge snapshots and vector tags from the database.

Usage:
    # Every owner:
    python scripts/reconcile.py --all

    # Selected owners:
    python scripts/reconcile.py --owner user-1 --owner user-2

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    ARCHIVE_ENDPOINT / ARCHIVE_ACCESS_KEY / ARCHIVE_SECRET_KEY / ARCHIVE_BUCKET: Object archive
    ARCHIVE_ROOT: Local archive directory when no endpoint is set (dev only)
    VECTOR_INDEX_HOST / VECTOR_INDEX_API_KEY: Vector index endpoint
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reconcile(owners: list[str], run_all: bool) -> list[dict]:
    # Import here to avoid loading config before env vars are set
    from kbsync.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if run_all:
            reports = await runtime.reconciler.reconcile_all()
        else:
            reports = [await runtime.reconciler.reconcile_owner(owner) for owner in owners]
    finally:
        await runtime.close()
    return [report.as_dict() for report in reports]


def main():
    parser = argparse.ArgumentParser(
        description="Reconcile kbsync archive and vector index state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--owner",
        action="append",
        default=[],
        help="Owner id to reconcile (repeatable)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Reconcile every owner known to the database",
    )
    args = parser.parse_args()

    if not args.all and not args.owner:
        print("Error: pass --all or at least one --owner")
        sys.exit(1)

    # The session resolver is unused here but needs a secret to initialise
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        reports = asyncio.run(reconcile(args.owner, args.all))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(reports, indent=2))
    if any(report["errors"] for report in reports):
        sys.exit(2)


if __name__ == "__main__":
    main()
