"""Summary retry queue commands for the sermonsync CLI."""

import json
from typing import TYPE_CHECKING

from sermonsync.types import format_datetime

if TYPE_CHECKING:
    from sermonsync.summary.retry_queue import SummaryRetryQueue


def cmd_queue(args, queue: "SummaryRetryQueue"):
    """Handle queue subcommands."""
    if args.queue_action == "list":
        ready = queue.snapshot()
        waiting = queue.deferred_jobs()
        if args.json:
            print(
                json.dumps(
                    {
                        "ready": [j.to_dict() for j in ready],
                        "waiting": [j.to_dict() for j in waiting],
                    },
                    indent=2,
                )
            )
            return
        if not ready and not waiting:
            print("No pending summaries.")
            return
        for label, jobs in (("ready", ready), ("waiting", waiting)):
            for job in jobs:
                print(
                    f"[{label}] sermon {job.sermon_id[:8]}...  retries {job.retry_count}  "
                    f"created {format_datetime(job.created_at)}"
                )

    elif args.queue_action == "sweep":
        queued = queue.sweep_stuck_jobs()
        print(f"Queued {queued} stuck summaries")

    elif args.queue_action == "cleanup":
        removed = queue.cleanup_old_jobs()
        print(f"Removed {removed} old pending summaries")
