"""
sermonsync - Offline-first sync for recorded sermons.

Keeps a local store of sermons, notes, transcripts and summaries in step
with a user's cloud account, and retries AI summary generation until it
succeeds or falls back to an extractive summary.
"""

from .storage.sqlite import SQLiteStore
from .storage.sync_engine import SyncOrchestrator
from .summary.retry_queue import SummaryRetryQueue

try:
    from importlib.metadata import version

    __version__ = version("sermonsync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SQLiteStore", "SyncOrchestrator", "SummaryRetryQueue"]
