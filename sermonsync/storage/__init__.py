"""sermonsync storage.

Local-first SQLite store, the cloud backend adapter and the sync engine
that reconciles the two.
"""

from .models import CreateResult, RemoteSermon, UploadSlot
from .sqlite import SQLiteStore
from .sync_engine import OrchestratorStatus, SyncOrchestrator

__all__ = [
    "CreateResult",
    "OrchestratorStatus",
    "RemoteSermon",
    "SQLiteStore",
    "SyncOrchestrator",
    "UploadSlot",
]
