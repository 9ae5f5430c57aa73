"""
Pytest fixtures and test configuration for sermonsync tests.
"""

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from sermonsync.protocols import StaticSession
from sermonsync.storage.models import CreateResult, RemoteSermon, UploadSlot
from sermonsync.storage.sqlite import SQLiteStore
from sermonsync.storage.sync_engine import SyncOrchestrator
from sermonsync.testing import ManualClock
from sermonsync.types import (
    Note,
    ProcessingStatus,
    Sermon,
    Transcript,
    parse_datetime,
)


class FakeRemoteBackend:
    """In-memory RemoteBackend.

    Rows are stored the way the API returns them (snake_case dicts).
    ``failures`` maps a method name to an exception raised on every call,
    ``fail_for`` maps a local sermon id to an exception raised when that
    sermon is created or updated, and ``hooks`` maps a method name to a
    callable run at the start of each call.
    """

    def __init__(self, download_dir: Path):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, Exception] = {}
        self.fail_for: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], Any]] = {}
        self.duplicates: Set[str] = set()  # local ids whose create answers 409
        self.gate: Optional[asyncio.Event] = None
        self.download_dir = download_dir
        self._next_id = 1

    async def _enter(self, name: str, arg: Any = None) -> None:
        self.calls.append((name, arg))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        if name in self.failures:
            raise self.failures[name]
        if self.gate is not None:
            await self.gate.wait()

    def calls_to(self, name: str) -> List[Any]:
        return [arg for call, arg in self.calls if call == name]

    def add_remote(self, remote_id: str, **fields) -> Dict[str, Any]:
        """Seed a remote row as if another device had created it."""
        row = {
            "id": remote_id,
            "local_id": None,
            "user_id": "user-1",
            "title": "Remote sermon",
            "date": "2024-01-07T09:00:00+00:00",
            "service_type": "Sunday Service",
            "speaker": None,
            "audio_file_url": None,
            "duration": 0.0,
            "transcription_status": "complete",
            "summary_status": "complete",
            "is_archived": False,
            "updated_at": "2024-01-07T09:00:00+00:00",
            "notes": [],
            "transcript": None,
            "summary": None,
        }
        row.update(fields)
        self.rows[remote_id] = row
        return row

    def _apply_payload(self, row: Dict[str, Any], payload: Dict[str, Any]) -> None:
        row.update(
            {
                "local_id": payload["localId"],
                "title": payload["title"],
                "date": payload["date"],
                "service_type": payload["serviceType"],
                "speaker": payload["speaker"],
                "audio_file_url": payload["audioFileUrl"],
                "duration": payload["duration"],
                "transcription_status": payload["transcriptionStatus"],
                "summary_status": payload["summaryStatus"],
                "is_archived": payload["isArchived"],
                "updated_at": payload["updatedAt"],
            }
        )

    async def create_aggregate(self, payload):
        await self._enter("create_aggregate", payload["localId"])
        if payload["localId"] in self.fail_for:
            raise self.fail_for[payload["localId"]]
        if payload["localId"] in self.duplicates:
            return CreateResult(conflict=True)
        remote_id = f"remote-{self._next_id}"
        self._next_id += 1
        row = self.add_remote(remote_id)
        self._apply_payload(row, payload)
        return CreateResult(
            remote_id=remote_id,
            created_at=parse_datetime(payload["updatedAt"]),
            updated_at=parse_datetime(payload["updatedAt"]),
        )

    async def update_aggregate(self, remote_id, payload):
        await self._enter("update_aggregate", remote_id)
        if payload["localId"] in self.fail_for:
            raise self.fail_for[payload["localId"]]
        self._apply_payload(self.rows[remote_id], payload)

    async def push_children(self, remote_id, notes, transcript, summary):
        await self._enter("push_children", remote_id)
        row = self.rows[remote_id]
        ids: Dict[str, str] = {}
        if notes is not None:
            row["notes"] = [
                {"id": f"rc-{n.id}", "local_id": n.id, "text": n.text, "timestamp": n.timestamp}
                for n in notes
            ]
            ids.update({n.id: f"rc-{n.id}" for n in notes})
        if transcript is not None:
            row["transcript"] = {"id": f"rc-{transcript.id}", "local_id": transcript.id, "text": transcript.text}
            ids[transcript.id] = f"rc-{transcript.id}"
        if summary is not None:
            row["summary"] = {
                "id": f"rc-{summary.id}",
                "local_id": summary.id,
                "title": summary.title,
                "text": summary.text,
            }
            ids[summary.id] = f"rc-{summary.id}"
        return ids

    async def fetch_aggregates(self, user_id):
        await self._enter("fetch_aggregates", user_id)
        return [
            RemoteSermon.model_validate(row)
            for row in self.rows.values()
            if row.get("user_id") in (None, user_id)
        ]

    async def get_signed_upload_slot(self, asset_name, content_type, size_bytes):
        await self._enter("get_signed_upload_slot", asset_name)
        return UploadSlot(upload_url=f"https://upload.test/{asset_name}", storage_path=f"user-1/{asset_name}")

    async def upload_asset(self, local_path, upload_url):
        await self._enter("upload_asset", upload_url)

    async def get_public_asset_url(self, storage_path):
        await self._enter("get_public_asset_url", storage_path)
        return f"https://cdn.test/sermon-audio/{storage_path}"

    async def download_asset(self, url):
        await self._enter("download_asset", url)
        self.download_dir.mkdir(parents=True, exist_ok=True)
        target = self.download_dir / url.rsplit("/", 1)[-1]
        target.write_bytes(b"audio")
        return target

    async def delete_all_user_data(self, user_id):
        await self._enter("delete_all_user_data", user_id)
        self.rows.clear()


@pytest.fixture
def clock():
    """Virtual clock starting at 2024-01-07 10:00 UTC."""
    return ManualClock()


@pytest.fixture
def store(tmp_path, clock):
    """SQLiteStore on a temporary database."""
    store = SQLiteStore(tmp_path / "sermons.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def remote(tmp_path):
    return FakeRemoteBackend(tmp_path / "downloads")


@pytest.fixture
def session():
    return StaticSession(user_id="user-1", can_sync=True)


@pytest.fixture
def orchestrator(store, remote, session, clock):
    return SyncOrchestrator(store, remote, session, clock)


@pytest.fixture
def make_sermon(store, clock):
    """Factory that saves and returns a new local sermon."""

    def _make(
        title: str = "Walking by Faith",
        *,
        minutes_ago: float = 0,
        transcript: Optional[str] = None,
        notes: Optional[List[str]] = None,
        save: bool = True,
        **fields,
    ) -> Sermon:
        at = clock.now() - timedelta(minutes=minutes_ago)
        sermon = Sermon(
            title=title,
            audio_file_path=fields.pop("audio_file_path", ""),
            date=fields.pop("date", at),
            service_type=fields.pop("service_type", "Sunday Service"),
            updated_at=at,
            **fields,
        )
        if transcript is not None:
            sermon.transcript = Transcript(text=transcript, updated_at=at)
        for i, text in enumerate(notes or []):
            sermon.notes.append(Note(text=text, timestamp=float(i * 60), updated_at=at))
        if save:
            store.save_sermon(sermon)
        return sermon

    return _make


@pytest.fixture
def processing_sermon(make_sermon):
    """A sermon whose summary is still being generated."""
    return make_sermon(
        transcript="Today we read from the gospel. Faith comes by hearing. Amen.",
        summary_status=ProcessingStatus.PROCESSING,
    )
