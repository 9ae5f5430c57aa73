"""
sermonsync Protocol Definitions
===============================

Narrow interfaces to the collaborators the sync subsystem does not own:

- Session:           who is signed in and whether their plan allows sync
- RemoteBackend:     authenticated calls to the managed cloud backend
- SummaryGenerator:  AI summary generation for a transcript
- Clock:             time, sleeping and delayed callbacks
- WindowProvider:    the OS-granted finite background execution window

Error handling philosophy:
- Sync preconditions fail with SubscriptionRequiredError before any I/O
- Transient transport failures raise NetworkError and are retried at the
  next sync opportunity, never in a tight loop
- Malformed server responses raise DataCorruptionError and are not retried
- Summary failures never escape the retry queue
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, runtime_checkable

from sermonsync.types import GeneratedSummary, Note, Summary, Transcript

if TYPE_CHECKING:
    from sermonsync.storage.models import CreateResult, RemoteSermon, UploadSlot


# =============================================================================
# ERRORS
# =============================================================================


class SermonSyncError(Exception):
    """Base for all sermonsync errors."""

    pass


class SubscriptionRequiredError(SermonSyncError):
    """Sync attempted without a signed-in user or without a sync entitlement.

    Not retried by the orchestrator; surfaced so the user can upgrade.
    """

    def __init__(self, message: str = "Sync requires a paid subscription"):
        super().__init__(message)


class NetworkError(SermonSyncError):
    """Transient transport or server failure. Safe to retry later."""

    pass


class RemoteRequestError(NetworkError):
    """The backend answered with an unexpected HTTP status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class DataCorruptionError(SermonSyncError):
    """The backend returned a response of the wrong shape.

    Needs manual intervention, so it is kept apart from NetworkError.
    """

    pass


class ConflictResolutionError(SermonSyncError):
    """Reserved for conflicts that last-write-wins cannot settle."""

    pass


class AuthError(SermonSyncError):
    """Credentials rejected after one silent session refresh."""

    pass


class SummaryServiceError(SermonSyncError):
    """Summary generation failed.

    ``transient`` separates failures worth retrying (timeouts, 5xx) from
    permanent ones (bad request, revoked key).
    """

    def __init__(self, message: str, *, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class RateLimitedError(SummaryServiceError):
    """The summary service asked us to back off for ``retry_after`` seconds."""

    def __init__(self, retry_after: float, message: str = "rate limited"):
        super().__init__(f"{message} (retry after {retry_after:.0f}s)", transient=True)
        self.retry_after = retry_after


# =============================================================================
# COLLABORATORS
# =============================================================================


@runtime_checkable
class Session(Protocol):
    """The signed-in user, as resolved by the auth and billing layers."""

    @property
    def user_id(self) -> Optional[str]:
        """Current user id, or None when signed out."""
        ...

    @property
    def can_sync(self) -> bool:
        """Whether the user's plan includes cloud sync."""
        ...


@dataclass
class StaticSession:
    """A Session with fixed values. Used by the CLI and in tests."""

    user_id: Optional[str] = None
    can_sync: bool = False


class RemoteBackend(Protocol):
    """Authenticated access to the cloud copy of a user's sermons."""

    async def create_aggregate(self, payload: dict[str, Any]) -> "CreateResult":
        """Create a sermon. A duplicate returns ``CreateResult(conflict=True)``."""
        ...

    async def update_aggregate(self, remote_id: str, payload: dict[str, Any]) -> None: ...

    async def push_children(
        self,
        remote_id: str,
        notes: Optional[list[Note]],
        transcript: Optional[Transcript],
        summary: Optional[Summary],
    ) -> dict[str, str]:
        """Upsert children of a sermon. Returns local id -> remote id.

        ``notes`` replaces the remote note list; None leaves it untouched.
        """
        ...

    async def fetch_aggregates(self, user_id: str) -> list["RemoteSermon"]: ...

    async def get_signed_upload_slot(
        self, asset_name: str, content_type: str, size_bytes: int
    ) -> "UploadSlot": ...

    async def upload_asset(self, local_path: Path, upload_url: str) -> None: ...

    async def get_public_asset_url(self, storage_path: str) -> str: ...

    async def download_asset(self, url: str) -> Path: ...

    async def delete_all_user_data(self, user_id: str) -> None: ...


class SummaryGenerator(Protocol):
    """Produces a summary for a transcript.

    Raises RateLimitedError or SummaryServiceError; transport problems may
    also surface as NetworkError.
    """

    async def generate(self, transcript: str, service_type: str) -> GeneratedSummary: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Time source and scheduler.

    Backoff delays, stuck-job timeouts and the periodic sync timer all go
    through this so tests can drive them without real sleeps.
    """

    def now(self) -> datetime:
        """Current wall-clock time (aware, UTC)."""
        ...

    def monotonic(self) -> float:
        """Seconds on a clock that never goes backwards. Used for deadlines."""
        ...

    async def sleep(self, seconds: float) -> None: ...

    def call_later(self, seconds: float, callback: Callable[[], Any]) -> TimerHandle: ...


class WindowProvider(Protocol):
    """The operating system's finite background execution grant."""

    def begin(self, name: str) -> tuple[str, float]:
        """Request a window. Returns (token, seconds granted)."""
        ...

    def end(self, token: str) -> None: ...
