"""Pydantic models for the cloud API wire format.

Request bodies are camelCase, rows returned by the API are snake_case.
Every response body is wrapped as ``{"success": ..., "data": ...}``.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from sermonsync.types import (
    Note,
    ProcessingStatus,
    Sermon,
    Summary,
    SyncStatus,
    Transcript,
    TranscriptSegment,
    format_datetime,
    new_id,
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


# =============================================================================
# Response Models
# =============================================================================


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ApiEnvelope(_Row):
    """Wrapper around every API response body."""
    success: bool = True
    data: Any = None
    error: str | None = None


class RemoteNote(_Row):
    id: str | None = None
    local_id: str | None = None
    text: str
    timestamp: float = 0.0
    updated_at: UtcDatetime | None = None


class RemoteSegment(_Row):
    id: str | None = None
    text: str
    start_time: float = Field(0.0, alias="startTime")
    end_time: float = Field(0.0, alias="endTime")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RemoteTranscript(_Row):
    id: str | None = None
    local_id: str | None = None
    text: str
    segments: list[RemoteSegment] | None = None
    updated_at: UtcDatetime | None = None


class RemoteSummary(_Row):
    id: str | None = None
    local_id: str | None = None
    title: str = ""
    text: str
    type: str = "Sermon"
    status: str = "complete"
    updated_at: UtcDatetime | None = None


class RemoteSermon(_Row):
    """A sermon row as returned by get-sermons and create-sermon."""
    id: str
    local_id: str | None = None
    user_id: str | None = None
    title: str
    date: UtcDatetime
    service_type: str = "Sunday Service"
    speaker: str | None = None
    audio_file_url: str | None = None
    audio_file_name: str | None = None
    audio_file_size_bytes: int | None = None
    duration: float = 0.0
    transcription_status: str = "complete"
    summary_status: str = "complete"
    is_archived: bool = False
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime
    notes: list[RemoteNote] | None = None
    transcript: RemoteTranscript | None = None
    summary: RemoteSummary | None = None


class CreateResult(BaseModel):
    """Outcome of create-sermon. ``conflict`` means the row already existed (409)."""
    remote_id: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None
    conflict: bool = False


class UploadSlot(BaseModel):
    """A signed, single-use upload target in the audio bucket."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    upload_url: str = Field(..., alias="uploadUrl")
    storage_path: str = Field(..., alias="path")
    token: str | None = None


# =============================================================================
# Request Payloads
# =============================================================================


def sermon_payload(sermon: Sermon, size_bytes: Optional[int] = None) -> dict[str, Any]:
    """Body for create-sermon. Update adds ``remoteId``."""
    payload: dict[str, Any] = {
        "localId": sermon.id,
        "title": sermon.title,
        "audioFilePath": sermon.audio_file_path,
        "audioFileUrl": sermon.audio_file_url,
        "audioFileName": sermon.audio_file_name,
        "duration": sermon.duration,
        "date": format_datetime(sermon.date),
        "serviceType": sermon.service_type,
        "speaker": sermon.speaker,
        "transcriptionStatus": sermon.transcription_status.value,
        "summaryStatus": sermon.summary_status.value,
        "isArchived": sermon.is_archived,
        "updatedAt": format_datetime(sermon.updated_at),
    }
    if size_bytes is not None:
        payload["audioFileSizeBytes"] = size_bytes
    return payload


def children_payload(
    notes: Optional[list[Note]], transcript: Optional[Transcript], summary: Optional[Summary]
) -> dict[str, Any]:
    """Body fragment carrying a sermon's children.

    A ``notes`` list replaces every remote note of the sermon, so it is only
    included when given. None leaves the remote notes alone.
    """
    payload: dict[str, Any] = {}
    if notes is not None:
        payload["notes"] = [{"id": n.id, "text": n.text, "timestamp": n.timestamp} for n in notes]
    if transcript is not None:
        payload["transcript"] = {
            "id": transcript.id,
            "text": transcript.text,
            "segments": [
                {"id": s.id, "text": s.text, "startTime": s.start_time, "endTime": s.end_time}
                for s in transcript.segments
            ],
            "status": "complete",
        }
    if summary is not None:
        payload["summary"] = {
            "id": summary.id,
            "title": summary.title,
            "text": summary.text,
            "type": summary.type,
            "status": summary.status.value,
        }
    return payload


# =============================================================================
# Conversions
# =============================================================================


def _status(value: str, default: ProcessingStatus) -> ProcessingStatus:
    try:
        return ProcessingStatus(value)
    except ValueError:
        return default


def remote_to_sermon(remote: RemoteSermon, synced_at: datetime) -> Sermon:
    """Materialize a remote row as a new, fully synced local aggregate."""
    updated_at = remote.updated_at
    sermon = Sermon(
        id=remote.local_id or new_id(),
        remote_id=remote.id,
        title=remote.title,
        audio_file_path="",
        audio_file_url=remote.audio_file_url,
        date=remote.date,
        service_type=remote.service_type,
        speaker=remote.speaker,
        duration=remote.duration,
        is_archived=remote.is_archived,
        transcription_status=_status(remote.transcription_status, ProcessingStatus.COMPLETE),
        summary_status=_status(remote.summary_status, ProcessingStatus.COMPLETE),
        sync_status=SyncStatus.SYNCED,
        needs_sync=False,
        updated_at=updated_at,
        last_synced_at=max(synced_at, updated_at),
        user_id=remote.user_id,
    )
    sermon.notes = [
        Note(
            text=n.text,
            timestamp=n.timestamp,
            id=n.local_id or new_id(),
            remote_id=n.id,
            updated_at=n.updated_at or updated_at,
            needs_sync=False,
        )
        for n in (remote.notes or [])
    ]
    if remote.transcript is not None:
        t = remote.transcript
        sermon.transcript = Transcript(
            text=t.text,
            segments=[
                TranscriptSegment(
                    text=s.text, start_time=s.start_time, end_time=s.end_time, id=s.id or new_id()
                )
                for s in (t.segments or [])
            ],
            id=t.local_id or new_id(),
            remote_id=t.id,
            updated_at=t.updated_at or updated_at,
            needs_sync=False,
        )
    if remote.summary is not None:
        s = remote.summary
        sermon.summary = Summary(
            text=s.text,
            title=s.title or "Sermon Summary",
            type=s.type,
            status=_status(s.status, ProcessingStatus.COMPLETE),
            id=s.local_id or new_id(),
            remote_id=s.id,
            updated_at=s.updated_at or updated_at,
            needs_sync=False,
        )
    return sermon


def apply_remote_fields(sermon: Sermon, remote: RemoteSermon) -> None:
    """Overwrite the aggregate's scalar fields with the remote row's."""
    sermon.remote_id = remote.id
    sermon.title = remote.title
    sermon.date = remote.date
    sermon.service_type = remote.service_type
    sermon.speaker = remote.speaker
    sermon.duration = remote.duration
    sermon.is_archived = remote.is_archived
    sermon.transcription_status = _status(remote.transcription_status, sermon.transcription_status)
    sermon.summary_status = _status(remote.summary_status, sermon.summary_status)
    if remote.audio_file_url:
        sermon.audio_file_url = remote.audio_file_url
    sermon.updated_at = remote.updated_at


def sermon_snapshot(sermon: Sermon) -> dict[str, Any]:
    """Scalar view of a local aggregate, stored with conflict records."""
    return {
        "title": sermon.title,
        "date": format_datetime(sermon.date),
        "service_type": sermon.service_type,
        "speaker": sermon.speaker,
        "duration": sermon.duration,
        "is_archived": sermon.is_archived,
        "transcription_status": sermon.transcription_status.value,
        "summary_status": sermon.summary_status.value,
        "updated_at": format_datetime(sermon.updated_at),
    }


def remote_snapshot(remote: RemoteSermon) -> dict[str, Any]:
    return {
        "title": remote.title,
        "date": format_datetime(remote.date),
        "service_type": remote.service_type,
        "speaker": remote.speaker,
        "duration": remote.duration,
        "is_archived": remote.is_archived,
        "transcription_status": remote.transcription_status,
        "summary_status": remote.summary_status,
        "updated_at": format_datetime(remote.updated_at),
    }
