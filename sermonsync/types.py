"""
Shared record types for sermonsync.

The Sermon aggregate and its children are the unit of synchronization. The
local store persists them, the sync engine pushes and pulls them, and the
summary retry queue writes summaries back into them. PendingSummaryJob is
the durable retry-queue entry.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string. Naive values are taken as UTC."""
    if not s:
        return None
    parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# === Enums ===


class ProcessingStatus(str, Enum):
    """Lifecycle of transcription and summary generation for a sermon."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """Sync status of a sermon aggregate.

    Moves along localOnly -> pending -> syncing -> {synced, error}. An
    errored aggregate goes back through pending on its next attempt and a
    synced one goes back to pending when edited locally.
    """

    LOCAL_ONLY = "localOnly"
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"

    def can_transition_to(self, target: "SyncStatus") -> bool:
        return target in _SYNC_TRANSITIONS[self]


_SYNC_TRANSITIONS: Dict[SyncStatus, frozenset] = {
    SyncStatus.LOCAL_ONLY: frozenset({SyncStatus.PENDING}),
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCING}),
    SyncStatus.SYNCING: frozenset({SyncStatus.SYNCED, SyncStatus.ERROR}),
    SyncStatus.SYNCED: frozenset({SyncStatus.PENDING}),
    SyncStatus.ERROR: frozenset({SyncStatus.PENDING}),
}


class SyncStatusError(ValueError):
    """Raised on a sync status change outside the allowed transitions."""

    def __init__(self, sermon_id: str, current: SyncStatus, target: SyncStatus):
        self.sermon_id = sermon_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal sync status transition for sermon {sermon_id}: "
            f"{current.value} -> {target.value}"
        )


# === Aggregate ===


@dataclass
class Note:
    """A timestamped note taken while recording."""

    text: str
    timestamp: float = 0.0  # seconds into the audio
    id: str = field(default_factory=new_id)
    remote_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    needs_sync: bool = True


@dataclass
class TranscriptSegment:
    text: str
    start_time: float
    end_time: float
    id: str = field(default_factory=new_id)


@dataclass
class Transcript:
    text: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    remote_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    needs_sync: bool = True


@dataclass
class Summary:
    text: str
    title: str = "Sermon Summary"
    type: str = "Sunday Service"  # service type the summary was written for
    status: ProcessingStatus = ProcessingStatus.COMPLETE
    id: str = field(default_factory=new_id)
    remote_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    needs_sync: bool = True


@dataclass
class Sermon:
    """A recorded sermon and its owned children, synced as one unit."""

    title: str
    audio_file_path: str
    date: datetime
    service_type: str
    id: str = field(default_factory=new_id)
    remote_id: Optional[str] = None
    speaker: Optional[str] = None
    audio_file_url: Optional[str] = None
    duration: float = 0.0
    is_archived: bool = False
    transcript: Optional[Transcript] = None
    notes: List[Note] = field(default_factory=list)
    summary: Optional[Summary] = None
    transcription_status: ProcessingStatus = ProcessingStatus.PROCESSING
    summary_status: ProcessingStatus = ProcessingStatus.PROCESSING
    # Sync metadata
    sync_status: SyncStatus = SyncStatus.LOCAL_ONLY
    needs_sync: bool = True
    updated_at: datetime = field(default_factory=utc_now)
    last_synced_at: Optional[datetime] = None
    user_id: Optional[str] = None

    def transition(self, target: SyncStatus) -> None:
        """Move to ``target`` along the allowed sync status transitions."""
        if self.sync_status == target:
            return
        if not self.sync_status.can_transition_to(target):
            raise SyncStatusError(self.id, self.sync_status, target)
        self.sync_status = target

    def touch(self, now: datetime) -> None:
        """Record a local edit: bump updated_at and flag for the next push.

        An aggregate that is mid-push keeps its ``syncing`` status; the
        orchestrator notices the newer ``updated_at`` when the push lands.
        """
        self.updated_at = now
        self.needs_sync = True
        if self.sync_status.can_transition_to(SyncStatus.PENDING):
            self.sync_status = SyncStatus.PENDING

    def adopt_remote(self, synced_at: datetime) -> None:
        """Mark as a faithful copy of the remote version."""
        self.sync_status = SyncStatus.SYNCED
        self.needs_sync = False
        self.last_synced_at = max(synced_at, self.updated_at)

    def reset_to_local(self) -> None:
        """Forget the cloud copy after the user's remote data was wiped."""
        self.remote_id = None
        self.last_synced_at = None
        self.sync_status = SyncStatus.LOCAL_ONLY
        self.needs_sync = False
        for child in [*self.notes, self.transcript, self.summary]:
            if child is not None:
                child.remote_id = None

    def is_sync_consistent(self) -> bool:
        """needs_sync == False implies updated_at <= last_synced_at."""
        if self.needs_sync or self.sync_status == SyncStatus.LOCAL_ONLY:
            return True
        return self.last_synced_at is not None and self.updated_at <= self.last_synced_at

    @property
    def audio_file_name(self) -> str:
        return self.audio_file_path.replace("\\", "/").rsplit("/", 1)[-1]


# === Summary Retry Queue ===


@dataclass(frozen=True)
class PendingSummaryJob:
    """A summary request waiting to be (re)attempted.

    Unique per sermon id while queued. ``retry_count`` never exceeds the
    queue's configured maximum.
    """

    sermon_id: str
    transcript: str
    service_type: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None

    def with_incremented_retry(self, now: datetime) -> "PendingSummaryJob":
        return replace(self, retry_count=self.retry_count + 1, last_attempt_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sermon_id": self.sermon_id,
            "transcript": self.transcript,
            "service_type": self.service_type,
            "created_at": format_datetime(self.created_at),
            "retry_count": self.retry_count,
            "last_attempt_at": format_datetime(self.last_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSummaryJob":
        return cls(
            id=data["id"],
            sermon_id=data["sermon_id"],
            transcript=data["transcript"],
            service_type=data["service_type"],
            created_at=parse_datetime(data["created_at"]) or utc_now(),
            retry_count=int(data.get("retry_count", 0)),
            last_attempt_at=parse_datetime(data.get("last_attempt_at")),
        )


@dataclass(frozen=True)
class SummaryCompletion:
    """Published once per job when its sermon's summary is complete."""

    sermon_id: str
    job_id: str
    used_fallback: bool = False


@dataclass
class GeneratedSummary:
    text: str
    title: Optional[str] = None


# === Sync Types ===


@dataclass
class SyncConflict:
    """A local aggregate overwritten by a newer remote version during pull.

    Resolution is always last-write-wins on the whole aggregate. The record
    is kept so the user can see what was replaced.
    """

    id: str
    sermon_id: str
    remote_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    resolution: str  # "remote_wins"
    resolved_at: datetime
    local_summary: Optional[str] = None
    remote_summary: Optional[str] = None
    diff_hash: Optional[str] = None


@dataclass
class SyncResult:
    """Result of one sync_all() pass."""

    pushed: int = 0  # Aggregates pushed to the remote store
    pulled: int = 0  # Aggregates created or overwritten locally
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    abandoned: bool = False  # Deadline passed before every item was handled

    @property
    def success(self) -> bool:
        return len(self.errors) == 0 and not self.abandoned

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)
