"""SQLite local store for sermonsync.

Local-first storage: every sermon aggregate (the sermon plus its notes,
transcript and summary) lives here and is written in one transaction. The
sync orchestrator and the summary retry queue only ever go through this
class, never through raw SQL.
"""

import contextlib
import hashlib
import json
import logging
import sqlite3
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sermonsync.protocols import Clock
from sermonsync.types import (
    Note,
    ProcessingStatus,
    Sermon,
    Summary,
    SyncConflict,
    SyncStatus,
    Transcript,
    TranscriptSegment,
    format_datetime,
    parse_datetime,
    utc_now,
)

from .schema import CHILD_TABLES, init_db, validate_table_name

logger = logging.getLogger(__name__)


def conflict_diff_hash(local_version: Dict[str, Any], remote_version: Dict[str, Any]) -> str:
    """Stable hash of a conflict's two sides, used to skip duplicate records."""
    payload = json.dumps(
        {"local": local_version, "remote": remote_version}, sort_keys=True, default=str
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SQLiteStore:
    """Durable local store of sermon aggregates, key-value state and conflicts."""

    def __init__(self, db_path: Union[str, Path], clock: Optional[Clock] = None):
        self.db_path = self._validate_db_path(Path(db_path))
        self._clock = clock
        self._init_db()

    def _validate_db_path(self, db_path: Path) -> Path:
        try:
            resolved_path = db_path.expanduser().resolve()
            resolved_path.parent.mkdir(parents=True, exist_ok=True)
            return resolved_path
        except (OSError, ValueError) as e:
            logger.error(f"Invalid database path: {e}")
            raise ValueError(f"Invalid database path: {e}")

    def _now(self) -> datetime:
        return self._clock.now() if self._clock else utc_now()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    # === Sermons ===

    def save_sermon(self, sermon: Sermon) -> str:
        """Persist a sermon and its children atomically.

        Children no longer attached to the aggregate are deleted.
        """
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sermons
                   (id, remote_id, title, audio_file_path, audio_file_url, date,
                    service_type, speaker, duration, is_archived,
                    transcription_status, summary_status, sync_status,
                    needs_sync, updated_at, last_synced_at, user_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    remote_id = excluded.remote_id,
                    title = excluded.title,
                    audio_file_path = excluded.audio_file_path,
                    audio_file_url = excluded.audio_file_url,
                    date = excluded.date,
                    service_type = excluded.service_type,
                    speaker = excluded.speaker,
                    duration = excluded.duration,
                    is_archived = excluded.is_archived,
                    transcription_status = excluded.transcription_status,
                    summary_status = excluded.summary_status,
                    sync_status = excluded.sync_status,
                    needs_sync = excluded.needs_sync,
                    updated_at = excluded.updated_at,
                    last_synced_at = excluded.last_synced_at,
                    user_id = excluded.user_id""",
                (
                    sermon.id,
                    sermon.remote_id,
                    sermon.title,
                    sermon.audio_file_path,
                    sermon.audio_file_url,
                    format_datetime(sermon.date),
                    sermon.service_type,
                    sermon.speaker,
                    sermon.duration,
                    1 if sermon.is_archived else 0,
                    sermon.transcription_status.value,
                    sermon.summary_status.value,
                    sermon.sync_status.value,
                    1 if sermon.needs_sync else 0,
                    format_datetime(sermon.updated_at),
                    format_datetime(sermon.last_synced_at),
                    sermon.user_id,
                ),
            )
            self._save_notes(conn, sermon.id, sermon.notes)
            self._save_transcript(conn, sermon.id, sermon.transcript)
            self._save_summary(conn, sermon.id, sermon.summary)
        return sermon.id

    def _save_notes(self, conn: sqlite3.Connection, sermon_id: str, notes: List[Note]) -> None:
        keep = [n.id for n in notes]
        if keep:
            placeholders = ",".join("?" * len(keep))
            conn.execute(
                f"DELETE FROM notes WHERE sermon_id = ? AND id NOT IN ({placeholders})",
                (sermon_id, *keep),
            )
        else:
            conn.execute("DELETE FROM notes WHERE sermon_id = ?", (sermon_id,))
        for note in notes:
            conn.execute(
                """INSERT OR REPLACE INTO notes
                   (id, sermon_id, remote_id, text, timestamp, updated_at, needs_sync)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    note.id,
                    sermon_id,
                    note.remote_id,
                    note.text,
                    note.timestamp,
                    format_datetime(note.updated_at),
                    1 if note.needs_sync else 0,
                ),
            )

    def _save_transcript(
        self, conn: sqlite3.Connection, sermon_id: str, transcript: Optional[Transcript]
    ) -> None:
        if transcript is None:
            conn.execute("DELETE FROM transcripts WHERE sermon_id = ?", (sermon_id,))
            return
        segments = [
            {"id": s.id, "text": s.text, "start_time": s.start_time, "end_time": s.end_time}
            for s in transcript.segments
        ]
        conn.execute(
            """INSERT OR REPLACE INTO transcripts
               (id, sermon_id, remote_id, text, segments, updated_at, needs_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                transcript.id,
                sermon_id,
                transcript.remote_id,
                transcript.text,
                json.dumps(segments),
                format_datetime(transcript.updated_at),
                1 if transcript.needs_sync else 0,
            ),
        )

    def _save_summary(
        self, conn: sqlite3.Connection, sermon_id: str, summary: Optional[Summary]
    ) -> None:
        if summary is None:
            conn.execute("DELETE FROM summaries WHERE sermon_id = ?", (sermon_id,))
            return
        conn.execute(
            """INSERT OR REPLACE INTO summaries
               (id, sermon_id, remote_id, title, text, type, status, updated_at, needs_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                summary.id,
                sermon_id,
                summary.remote_id,
                summary.title,
                summary.text,
                summary.type,
                summary.status.value,
                format_datetime(summary.updated_at),
                1 if summary.needs_sync else 0,
            ),
        )

    def get_sermon(self, sermon_id: str) -> Optional[Sermon]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sermons WHERE id = ?", (sermon_id,)).fetchone()
            return self._row_to_sermon(conn, row) if row else None

    def get_sermon_by_remote_id(self, remote_id: str) -> Optional[Sermon]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sermons WHERE remote_id = ?", (remote_id,)
            ).fetchone()
            return self._row_to_sermon(conn, row) if row else None

    def list_sermons(self, include_archived: bool = True) -> List[Sermon]:
        """All sermons, newest recording first."""
        query = "SELECT * FROM sermons"
        if not include_archived:
            query += " WHERE is_archived = 0"
        query += " ORDER BY date DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
            return [self._row_to_sermon(conn, row) for row in rows]

    def get_sermons_needing_sync(self) -> List[Sermon]:
        """Sermons with unpushed local changes, oldest edit first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sermons WHERE needs_sync = 1 ORDER BY updated_at ASC"
            ).fetchall()
            return [self._row_to_sermon(conn, row) for row in rows]

    def get_sermons_with_summary_status(self, status: ProcessingStatus) -> List[Sermon]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sermons WHERE summary_status = ? ORDER BY updated_at ASC",
                (status.value,),
            ).fetchall()
            return [self._row_to_sermon(conn, row) for row in rows]

    def mark_modified(self, sermon_id: str) -> Optional[Sermon]:
        """Flag a sermon as edited locally so the next sync pushes it."""
        sermon = self.get_sermon(sermon_id)
        if sermon is None:
            return None
        sermon.touch(self._now())
        self.save_sermon(sermon)
        return sermon

    def delete_sermon(self, sermon_id: str) -> bool:
        """Delete a sermon and everything it owns."""
        with self._connect() as conn:
            for table in CHILD_TABLES:
                conn.execute(
                    f"DELETE FROM {validate_table_name(table)} WHERE sermon_id = ?",
                    (sermon_id,),
                )
            cursor = conn.execute("DELETE FROM sermons WHERE id = ?", (sermon_id,))
            return cursor.rowcount > 0

    def count_by_sync_status(self) -> Dict[SyncStatus, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT sync_status, COUNT(*) AS n FROM sermons GROUP BY sync_status"
            ).fetchall()
        counts: Counter = Counter()
        for row in rows:
            counts[SyncStatus(row["sync_status"])] = row["n"]
        return dict(counts)

    def _row_to_sermon(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Sermon:
        sermon_id = row["id"]
        note_rows = conn.execute(
            "SELECT * FROM notes WHERE sermon_id = ? ORDER BY timestamp ASC", (sermon_id,)
        ).fetchall()
        transcript_row = conn.execute(
            "SELECT * FROM transcripts WHERE sermon_id = ?", (sermon_id,)
        ).fetchone()
        summary_row = conn.execute(
            "SELECT * FROM summaries WHERE sermon_id = ?", (sermon_id,)
        ).fetchone()

        notes = [
            Note(
                id=n["id"],
                text=n["text"],
                timestamp=n["timestamp"] or 0.0,
                remote_id=n["remote_id"],
                updated_at=parse_datetime(n["updated_at"]),
                needs_sync=bool(n["needs_sync"]),
            )
            for n in note_rows
        ]
        transcript = None
        if transcript_row:
            transcript = Transcript(
                id=transcript_row["id"],
                text=transcript_row["text"],
                segments=[
                    TranscriptSegment(
                        id=s["id"], text=s["text"], start_time=s["start_time"], end_time=s["end_time"]
                    )
                    for s in json.loads(transcript_row["segments"] or "[]")
                ],
                remote_id=transcript_row["remote_id"],
                updated_at=parse_datetime(transcript_row["updated_at"]),
                needs_sync=bool(transcript_row["needs_sync"]),
            )
        summary = None
        if summary_row:
            summary = Summary(
                id=summary_row["id"],
                title=summary_row["title"],
                text=summary_row["text"],
                type=summary_row["type"],
                status=ProcessingStatus(summary_row["status"]),
                remote_id=summary_row["remote_id"],
                updated_at=parse_datetime(summary_row["updated_at"]),
                needs_sync=bool(summary_row["needs_sync"]),
            )

        return Sermon(
            id=sermon_id,
            remote_id=row["remote_id"],
            title=row["title"],
            audio_file_path=row["audio_file_path"],
            audio_file_url=row["audio_file_url"],
            date=parse_datetime(row["date"]),
            service_type=row["service_type"],
            speaker=row["speaker"],
            duration=row["duration"] or 0.0,
            is_archived=bool(row["is_archived"]),
            transcript=transcript,
            notes=notes,
            summary=summary,
            transcription_status=ProcessingStatus(row["transcription_status"]),
            summary_status=ProcessingStatus(row["summary_status"]),
            sync_status=SyncStatus(row["sync_status"]),
            needs_sync=bool(row["needs_sync"]),
            updated_at=parse_datetime(row["updated_at"]),
            last_synced_at=parse_datetime(row["last_synced_at"]),
            user_id=row["user_id"],
        )

    # === Key-Value Storage ===

    def kv_get(self, key: str, default: Any = None) -> Any:
        """Read a JSON value stored under ``key``."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable value for key {key!r}")
            return default

    def kv_set(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value, updated_at = excluded.updated_at""",
                (key, json.dumps(value), format_datetime(self._now())),
            )

    def kv_delete(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            return cursor.rowcount > 0

    # === Sync Conflicts ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        """Save a sync conflict record. Deduplicates by diff_hash."""
        diff_hash = conflict.diff_hash or conflict_diff_hash(
            conflict.local_version, conflict.remote_version
        )
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM sync_conflicts WHERE diff_hash = ?", (diff_hash,)
            ).fetchone()
            if existing:
                return existing["id"]  # Already recorded

            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, sermon_id, remote_id, local_version, remote_version,
                    resolution, resolved_at, local_summary, remote_summary, diff_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.sermon_id,
                    conflict.remote_id,
                    json.dumps(conflict.local_version, default=str),
                    json.dumps(conflict.remote_version, default=str),
                    conflict.resolution,
                    format_datetime(conflict.resolved_at),
                    conflict.local_summary,
                    conflict.remote_summary,
                    diff_hash,
                ),
            )
        return conflict.id

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        """Get recent sync conflict history, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_conflicts
                   ORDER BY resolved_at DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()

        return [
            SyncConflict(
                id=row["id"],
                sermon_id=row["sermon_id"],
                remote_id=row["remote_id"],
                local_version=json.loads(row["local_version"]),
                remote_version=json.loads(row["remote_version"]),
                resolution=row["resolution"],
                resolved_at=parse_datetime(row["resolved_at"]) or utc_now(),
                local_summary=row["local_summary"],
                remote_summary=row["remote_summary"],
                diff_hash=row["diff_hash"],
            )
            for row in rows
        ]

    def clear_sync_conflicts(self, before: Optional[datetime] = None) -> int:
        """Clear sync conflict history, optionally only entries older than ``before``."""
        with self._connect() as conn:
            if before:
                cursor = conn.execute(
                    "DELETE FROM sync_conflicts WHERE resolved_at < ?",
                    (format_datetime(before),),
                )
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
            return cursor.rowcount

    def close(self):
        """Connections are per operation; kept for API symmetry."""
        pass
