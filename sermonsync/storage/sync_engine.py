"""Sync engine for sermonsync.

SyncOrchestrator runs one push-then-pull pass between the local store and
the cloud backend. Sermon aggregates are the unit of sync; conflicts are
settled by last-write-wins on the whole aggregate, compared by updated_at.

A pass is strictly sequential (one outbound request at a time). Any error
aborts the current phase, and an error during push skips the pull. The
aggregate that was in flight is marked ``error``; everything persisted
before it stays persisted.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from sermonsync.clock import SystemClock
from sermonsync.protocols import (
    Clock,
    RemoteBackend,
    RemoteRequestError,
    Session,
    SubscriptionRequiredError,
)
from sermonsync.types import Sermon, SyncConflict, SyncResult, SyncStatus, new_id

from .models import (
    RemoteSermon,
    apply_remote_fields,
    remote_snapshot,
    remote_to_sermon,
    sermon_payload,
    sermon_snapshot,
)
from .sqlite import SQLiteStore

logger = logging.getLogger(__name__)

StatusCallback = Callable[["OrchestratorStatus", Optional[BaseException]], None]


class OrchestratorStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


def _has_unpushed_children(sermon: Sermon) -> bool:
    children = [*sermon.notes, sermon.transcript, sermon.summary]
    return any(c.needs_sync or c.remote_id is None for c in children if c is not None)


class SyncOrchestrator:
    """Pushes local changes, then pulls remote ones, for the signed-in user."""

    def __init__(
        self,
        store: SQLiteStore,
        remote: RemoteBackend,
        session: Session,
        clock: Optional[Clock] = None,
        *,
        audio_content_type: str = "audio/m4a",
    ):
        self.store = store
        self.remote = remote
        self.session = session
        self.clock = clock or SystemClock()
        self.audio_content_type = audio_content_type

        self.status = OrchestratorStatus.IDLE
        self.last_error: Optional[BaseException] = None
        self.last_result: Optional[SyncResult] = None
        self._subscribers: List[StatusCallback] = []
        self._inflight: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    # === Observers ===

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register for (status, error) updates. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, status: OrchestratorStatus, error: Optional[BaseException] = None):
        self.status = status
        if error is not None:
            self.last_error = error
        for callback in list(self._subscribers):
            try:
                callback(status, error)
            except Exception as e:
                logger.warning(f"Sync status observer failed: {e}", exc_info=True)

    # === Entry Points ===

    def _require_sync_allowed(self) -> str:
        user_id = self.session.user_id
        if not user_id or not self.session.can_sync:
            error = SubscriptionRequiredError()
            self._publish(OrchestratorStatus.ERROR, error)
            raise error
        return user_id

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def sync_all(self, deadline: Optional[float] = None) -> SyncResult:
        """Run one push-then-pull pass.

        Args:
            deadline: Optional ``clock.monotonic()`` value after which no new
                item is started. The result is then marked ``abandoned``.

        A call made while a pass is running waits for that pass and returns
        its result instead of starting a second one.

        Raises:
            SubscriptionRequiredError: No user signed in or plan lacks sync.
            Exception: Whatever aborted the pass, after it was published.
        """
        user_id = self._require_sync_allowed()

        if self.is_syncing:
            logger.debug("Sync already in progress, joining it")
            return await asyncio.shield(self._inflight)

        task = asyncio.ensure_future(self._run(user_id, deadline))
        self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def delete_all_cloud_data(self) -> None:
        """Wipe the user's cloud data, then forget every remote link locally.

        Local state is only touched after the remote wipe succeeded.
        """
        user_id = self._require_sync_allowed()
        async with self._lock:
            self._publish(OrchestratorStatus.SYNCING)
            try:
                await self.remote.delete_all_user_data(user_id)
            except Exception as e:
                logger.error(f"Cloud data deletion failed: {e}", exc_info=True)
                self._publish(OrchestratorStatus.ERROR, e)
                raise

            reset = 0
            for sermon in self.store.list_sermons():
                sermon.reset_to_local()
                self.store.save_sermon(sermon)
                reset += 1
            logger.info(f"Deleted cloud data for user, reset {reset} local sermons")
            self._publish(OrchestratorStatus.IDLE)

    # === Pass ===

    def _expired(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self.clock.monotonic() >= deadline

    async def _run(self, user_id: str, deadline: Optional[float]) -> SyncResult:
        async with self._lock:
            self._publish(OrchestratorStatus.SYNCING)
            result = SyncResult()
            try:
                await self._push_phase(deadline, user_id, result)
                if not result.abandoned:
                    await self._pull_phase(deadline, user_id, result)
            except Exception as e:
                logger.error(f"Sync aborted: {e}", exc_info=True)
                result.errors.append(str(e))
                self.last_result = result
                self._publish(OrchestratorStatus.ERROR, e)
                raise

            self.last_result = result
            if result.abandoned:
                logger.info(
                    f"Sync deadline reached: pushed {result.pushed}, pulled {result.pulled}"
                )
                self._publish(OrchestratorStatus.IDLE)
            else:
                logger.info(
                    f"Sync complete: pushed {result.pushed}, pulled {result.pulled}, "
                    f"{result.conflict_count} conflicts"
                )
                self._publish(OrchestratorStatus.SYNCED)
            return result

    # === Push ===

    async def _push_phase(self, deadline: Optional[float], user_id: str, result: SyncResult):
        pending = self.store.get_sermons_needing_sync()
        logger.debug(f"Pushing {len(pending)} sermons")
        for sermon in pending:
            if self._expired(deadline):
                result.abandoned = True
                return
            await self._push_sermon(sermon, user_id)
            result.pushed += 1

    async def _push_sermon(self, sermon: Sermon, user_id: str) -> None:
        # An aggregate left in ``syncing`` by an interrupted pass is resumed as is
        if sermon.sync_status != SyncStatus.SYNCING:
            sermon.transition(SyncStatus.PENDING)
        sermon.transition(SyncStatus.SYNCING)
        sermon.user_id = sermon.user_id or user_id
        self.store.save_sermon(sermon)
        edited_at = sermon.updated_at

        try:
            size_bytes = None
            if not sermon.audio_file_url:
                size_bytes = await self._upload_audio(sermon)

            payload = sermon_payload(sermon, size_bytes)
            if sermon.remote_id is None:
                created = await self.remote.create_aggregate(payload)
                if created.conflict:
                    logger.info(f"Sermon {sermon.id} already exists remotely, linking on pull")
                else:
                    sermon.remote_id = created.remote_id
            else:
                await self.remote.update_aggregate(sermon.remote_id, payload)

            pushed_children: List[Tuple[str, Optional[str]]] = []
            if sermon.remote_id is not None:
                pushed_children = await self._push_children(sermon)
        except Exception:
            self._mark_error(sermon.id)
            raise

        self._record_push(sermon, edited_at, pushed_children)

    async def _upload_audio(self, sermon: Sermon) -> Optional[int]:
        """Upload the recording and set its public URL. Returns the size in bytes."""
        if not sermon.audio_file_path:
            return None
        path = Path(sermon.audio_file_path)
        if not path.exists():
            logger.warning(f"Audio for sermon {sermon.id} not found at {path}, pushing metadata only")
            return None

        size_bytes = path.stat().st_size
        slot = await self.remote.get_signed_upload_slot(
            sermon.audio_file_name, self.audio_content_type, size_bytes
        )
        await self.remote.upload_asset(path, slot.upload_url)
        sermon.audio_file_url = await self.remote.get_public_asset_url(slot.storage_path)
        logger.debug(f"Uploaded audio for sermon {sermon.id} to {slot.storage_path}")
        return size_bytes

    async def _push_children(self, sermon: Sermon) -> List[Tuple[str, Optional[str]]]:
        """Push children that changed or were never pushed.

        Returns (child id, remote id) for every child pushed.
        """
        notes_dirty = any(n.needs_sync or n.remote_id is None for n in sermon.notes)
        notes = sermon.notes if notes_dirty else None
        transcript = sermon.transcript
        if transcript is not None and not (transcript.needs_sync or transcript.remote_id is None):
            transcript = None
        summary = sermon.summary
        if summary is not None and not (summary.needs_sync or summary.remote_id is None):
            summary = None

        if notes is None and transcript is None and summary is None:
            return []

        id_map = await self.remote.push_children(sermon.remote_id, notes, transcript, summary)
        pushed = [*(notes or []), transcript, summary]
        return [(child.id, id_map.get(child.id)) for child in pushed if child is not None]

    def _record_push(
        self,
        pushed: Sermon,
        edited_at,
        pushed_children: List[Tuple[str, Optional[str]]],
    ) -> None:
        """Persist the outcome of a successful push.

        Works on a fresh copy from the store so edits made while the push
        was awaiting the network are kept and flagged for the next pass.
        """
        sermon = self.store.get_sermon(pushed.id)
        if sermon is None:
            logger.info(f"Sermon {pushed.id} was deleted during push")
            return

        now = self.clock.now()
        sermon.remote_id = pushed.remote_id or sermon.remote_id
        sermon.audio_file_url = pushed.audio_file_url or sermon.audio_file_url
        sermon.user_id = pushed.user_id

        children = {c.id: c for c in [*sermon.notes, sermon.transcript, sermon.summary] if c}
        pushed_versions = {
            c.id: c.updated_at for c in [*pushed.notes, pushed.transcript, pushed.summary] if c
        }
        for child_id, remote_id in pushed_children:
            child = children.get(child_id)
            if child is None:
                continue
            child.remote_id = remote_id or child.remote_id or child_id
            if child.updated_at == pushed_versions.get(child_id):
                child.needs_sync = False

        sermon.last_synced_at = max(now, edited_at)
        sermon.transition(SyncStatus.SYNCED)
        if sermon.remote_id is None:
            # Create hit an existing row; stays queued until the pull links it
            sermon.needs_sync = True
            sermon.transition(SyncStatus.PENDING)
        elif sermon.updated_at > edited_at:
            logger.debug(f"Sermon {sermon.id} edited during push, queued again")
            sermon.needs_sync = True
            sermon.transition(SyncStatus.PENDING)
        else:
            sermon.needs_sync = False
        self.store.save_sermon(sermon)

    def _mark_error(self, sermon_id: str) -> None:
        sermon = self.store.get_sermon(sermon_id)
        if sermon is None:
            return
        if sermon.sync_status.can_transition_to(SyncStatus.ERROR):
            sermon.transition(SyncStatus.ERROR)
            self.store.save_sermon(sermon)

    # === Pull ===

    async def _pull_phase(self, deadline: Optional[float], user_id: str, result: SyncResult):
        remote_sermons = await self.remote.fetch_aggregates(user_id)
        logger.debug(f"Pulled {len(remote_sermons)} remote sermons")
        for remote in remote_sermons:
            if self._expired(deadline):
                result.abandoned = True
                return
            if await self._pull_sermon(remote, result):
                result.pulled += 1

    async def _pull_sermon(self, remote: RemoteSermon, result: SyncResult) -> bool:
        """Apply one remote aggregate. Returns True if local data was written from it."""
        now = self.clock.now()
        local = self.store.get_sermon_by_remote_id(remote.id)
        taken = False
        if local is None and remote.local_id:
            candidate = self.store.get_sermon(remote.local_id)
            if candidate is not None and candidate.remote_id is None:
                local = candidate
            taken = candidate is not None

        if local is None:
            sermon = remote_to_sermon(remote, now)
            if taken:
                # local_id belongs to a different, already linked sermon
                sermon.id = new_id()
            if remote.audio_file_url:
                sermon.audio_file_path = await self._download_audio(remote)
            self.store.save_sermon(sermon)
            logger.debug(f"Materialized remote sermon {remote.id} as {sermon.id}")
            return True

        if local.remote_id is None:
            return self._link_sermon(local, remote, now, result)

        if remote.updated_at > local.updated_at:
            self._overwrite(local, remote, now, result)
            return True
        return False

    def _link_sermon(
        self, local: Sermon, remote: RemoteSermon, now, result: SyncResult
    ) -> bool:
        """Attach a sermon whose create hit an existing remote row.

        The create that answered 409 carried the scalar fields, so only edits
        made after it count as unpushed. Children could not be pushed without
        a remote id; any that are dirty keep the sermon queued for an update.
        """
        local.remote_id = remote.id
        local.needs_sync = local.last_synced_at is None or local.updated_at > local.last_synced_at
        logger.info(f"Linked sermon {local.id} to existing remote {remote.id}")

        overwritten = remote.updated_at > local.updated_at
        if overwritten:
            self._overwrite(local, remote, now, result)
        else:
            if not local.audio_file_url and remote.audio_file_url:
                local.audio_file_url = remote.audio_file_url
            if local.updated_at == remote.updated_at and not local.needs_sync:
                local.adopt_remote(now)
            else:
                local.needs_sync = True

        if local.needs_sync or _has_unpushed_children(local):
            logger.debug(f"Sermon {local.id} queued to push its update under {remote.id}")
            local.needs_sync = True
            if local.sync_status.can_transition_to(SyncStatus.PENDING):
                local.transition(SyncStatus.PENDING)
        self.store.save_sermon(local)
        return overwritten

    def _overwrite(self, local: Sermon, remote: RemoteSermon, now, result: SyncResult) -> None:
        """Last-write-wins: the newer remote version replaces local scalar fields."""
        if local.needs_sync:
            conflict = SyncConflict(
                id=new_id(),
                sermon_id=local.id,
                remote_id=remote.id,
                local_version=sermon_snapshot(local),
                remote_version=remote_snapshot(remote),
                resolution="remote_wins",
                resolved_at=now,
                local_summary=local.title,
                remote_summary=remote.title,
            )
            self.store.save_sync_conflict(conflict)
            result.conflicts.append(conflict)
            logger.info(f"Remote version of sermon {local.id} is newer, local edits replaced")

        apply_remote_fields(local, remote)
        local.adopt_remote(now)
        self.store.save_sermon(local)

    async def _download_audio(self, remote: RemoteSermon) -> str:
        try:
            path = await self.remote.download_asset(remote.audio_file_url)
        except RemoteRequestError as e:
            # Permanent for this URL; keep the sermon and stream from the URL
            logger.warning(f"Could not download audio for remote sermon {remote.id}: {e}")
            return ""
        return str(path)
