"""Status and conflict history commands for the sermonsync CLI."""

import json
from typing import TYPE_CHECKING

from sermonsync.summary.retry_queue import PENDING_SUMMARIES_KEY
from sermonsync.types import SyncStatus, format_datetime

if TYPE_CHECKING:
    from sermonsync.storage.sqlite import SQLiteStore


def cmd_status(args, store: "SQLiteStore"):
    """Show sync and summary queue state of the local store."""
    counts = store.count_by_sync_status()
    needing_sync = len(store.get_sermons_needing_sync())
    pending_jobs = len(store.kv_get(PENDING_SUMMARIES_KEY, []) or [])
    conflicts = len(store.get_sync_conflicts(limit=1000))

    if args.json:
        print(
            json.dumps(
                {
                    "sync_status": {s.value: counts.get(s, 0) for s in SyncStatus},
                    "needs_sync": needing_sync,
                    "pending_summaries": pending_jobs,
                    "conflicts": conflicts,
                },
                indent=2,
            )
        )
        return

    total = sum(counts.values())
    print(f"Sermons: {total}")
    for status in SyncStatus:
        if counts.get(status):
            print(f"  {status.value}: {counts[status]}")
    print(f"Needing sync: {needing_sync}")
    print(f"Pending summaries: {pending_jobs}")
    print(f"Sync conflicts: {conflicts}")


def cmd_conflicts(args, store: "SQLiteStore"):
    """Show recent sync conflicts, or clear them."""
    if args.clear:
        removed = store.clear_sync_conflicts()
        print(f"Cleared {removed} conflict records")
        return

    conflicts = store.get_sync_conflicts(limit=args.limit)
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": c.id,
                        "sermon_id": c.sermon_id,
                        "remote_id": c.remote_id,
                        "resolution": c.resolution,
                        "resolved_at": format_datetime(c.resolved_at),
                        "local": c.local_summary,
                        "remote": c.remote_summary,
                    }
                    for c in conflicts
                ],
                indent=2,
            )
        )
        return

    if not conflicts:
        print("No sync conflicts recorded.")
        return
    for c in conflicts:
        print(f"{format_datetime(c.resolved_at)}  {c.sermon_id[:8]}...  {c.resolution}")
        print(f"  local:  {c.local_summary}")
        print(f"  remote: {c.remote_summary}")
