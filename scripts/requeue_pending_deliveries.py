#!/usr/bin/env python3
"""Re-publish delivery jobs for canonical events that still have PENDING/FAILED rows.

Covers events whose enqueue failed after the webhook committed, and events whose
queue retries ran out while a platform was down.
"""

import argparse
import asyncio
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from src.backend.app.config import get_settings  # noqa:E402
from src.backend.app.db import SessionLocal  # noqa:E402
from src.backend.app.delivery_queue import pending_canonical_event_ids, requeue_pending  # noqa:E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Requeue canonical events with undelivered platforms")
    parser.add_argument('--older-than', type=int, default=300, help='Only events created at least this many seconds ago')
    parser.add_argument('--dry-run', action='store_true', help='List event ids without publishing')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    db = SessionLocal()
    try:
        if args.dry_run:
            ids = pending_canonical_event_ids(db, args.older_than)
            for event_id in ids:
                print(f"[dry-run] would requeue {event_id}")
            print(f"{len(ids)} event(s) pending")
            return
        if not settings.qstash_token:
            print("QSTASH_TOKEN is not set; nothing can be published", file=sys.stderr)
            sys.exit(1)
        published = asyncio.run(requeue_pending(db, settings, args.older_than))
        print(f"requeued {published} event(s)")
    finally:
        db.close()


if __name__ == '__main__':
    main()
