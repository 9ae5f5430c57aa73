"""Durable retry queue for AI summary generation.

Jobs are processed one at a time while the network is available. A
transient failure puts the job back at the tail of the queue after an
exponential backoff of 2^retry_count minutes. Once the retry budget is
spent (or the failure is permanent) the job completes with an extractive
fallback summary, so every job ends with a usable summary.

The queue is persisted as a JSON array in the store's key-value table
after every mutation. Jobs waiting out a backoff are part of that array
and still count for the one-job-per-sermon rule.
"""

import asyncio
import logging
from datetime import timedelta
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from sermonsync.background.network import NetworkStatus
from sermonsync.clock import SystemClock
from sermonsync.config import Settings, get_settings
from sermonsync.protocols import (
    Clock,
    RateLimitedError,
    SummaryGenerator,
    SummaryServiceError,
    TimerHandle,
)
from sermonsync.storage.sqlite import SQLiteStore
from sermonsync.types import (
    GeneratedSummary,
    PendingSummaryJob,
    ProcessingStatus,
    Sermon,
    Summary,
    SummaryCompletion,
)

from .fallback import basic_summary

logger = logging.getLogger(__name__)

PENDING_SUMMARIES_KEY = "pending_summaries"

# Completion events kept for completions() consumers; the oldest is dropped first
COMPLETION_BUFFER_SIZE = 100


def backoff_delay(retry_count: int) -> timedelta:
    """Wait before re-running a job that has failed ``retry_count`` times."""
    return timedelta(minutes=2**retry_count)


class SummaryRetryQueue:
    """Serial, persistent queue of summary generation jobs.

    Construct inside a running event loop when using SystemClock, since
    restored jobs may schedule their backoff timers immediately.
    """

    def __init__(
        self,
        store: SQLiteStore,
        generator: Optional[SummaryGenerator],
        clock: Optional[Clock] = None,
        *,
        max_retries: Optional[int] = None,
        stuck_timeout: Optional[timedelta] = None,
        max_age: Optional[timedelta] = None,
        request_timeout: Optional[float] = None,
        pacing: Optional[float] = None,
        notifier: Optional[Callable[[str], None]] = None,
        network_available: bool = False,
        completion_buffer: int = COMPLETION_BUFFER_SIZE,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.generator = generator
        self.clock = clock or SystemClock()
        self.max_retries = settings.max_summary_retries if max_retries is None else max_retries
        self.stuck_timeout = stuck_timeout or timedelta(minutes=settings.stuck_job_timeout_minutes)
        self.max_age = max_age or timedelta(days=settings.pending_job_max_age_days)
        self.request_timeout = request_timeout or settings.request_timeout
        self.pacing = settings.queue_pacing_seconds if pacing is None else pacing
        self.notifier = notifier

        self._network_available = network_available
        self._queue: List[PendingSummaryJob] = []
        self._deferred: Dict[str, Tuple[PendingSummaryJob, TimerHandle]] = {}
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self._events: "asyncio.Queue[SummaryCompletion]" = asyncio.Queue(
            maxsize=completion_buffer
        )
        self._waiters: Dict[str, List[asyncio.Future]] = {}

        self._load()

    # === Persistence ===

    def _load(self) -> None:
        raw = self.store.kv_get(PENDING_SUMMARIES_KEY, [])
        now = self.clock.now()
        for item in raw if isinstance(raw, list) else []:
            try:
                job = PendingSummaryJob.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable pending summary: {e}")
                continue
            if self._has_job_for(job.sermon_id):
                continue
            if job.last_attempt_at is not None and job.retry_count > 0:
                due = job.last_attempt_at + backoff_delay(job.retry_count)
                if due > now:
                    self._defer(job, (due - now).total_seconds(), persist=False)
                    continue
            self._queue.append(job)
        if self._queue or self._deferred:
            logger.info(
                f"Loaded {len(self._queue)} pending summaries "
                f"({len(self._deferred)} waiting to retry)"
            )

    def _save(self) -> None:
        jobs = self._queue + [job for job, _ in self._deferred.values()]
        self.store.kv_set(PENDING_SUMMARIES_KEY, [job.to_dict() for job in jobs])

    # === Queue Contents ===

    def _has_job_for(self, sermon_id: str) -> bool:
        return any(j.sermon_id == sermon_id for j in self._queue) or any(
            j.sermon_id == sermon_id for j, _ in self._deferred.values()
        )

    def snapshot(self) -> List[PendingSummaryJob]:
        """Jobs ready to run, in processing order."""
        return list(self._queue)

    def deferred_jobs(self) -> List[PendingSummaryJob]:
        """Jobs waiting out a backoff delay."""
        return [job for job, _ in self._deferred.values()]

    def __len__(self) -> int:
        return len(self._queue) + len(self._deferred)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def network_available(self) -> bool:
        return self._network_available

    def _remove(self, job_id: str) -> None:
        before = len(self._queue)
        self._queue = [j for j in self._queue if j.id != job_id]
        if len(self._queue) != before:
            self._save()

    def _defer(self, job: PendingSummaryJob, delay: float, persist: bool = True) -> None:
        handle = self.clock.call_later(delay, lambda: self._release(job.id))
        self._deferred[job.id] = (job, handle)
        if persist:
            self._save()

    def _release(self, job_id: str) -> None:
        entry = self._deferred.pop(job_id, None)
        if entry is None:
            return
        job = entry[0]
        logger.debug(f"Backoff over for sermon {job.sermon_id}, requeued")
        self._queue.append(job)
        self._save()
        self._kick()

    # === Adding Jobs ===

    def enqueue(self, job: PendingSummaryJob) -> bool:
        """Add a job unless its sermon already has one queued or waiting."""
        if self._has_job_for(job.sermon_id):
            logger.debug(f"Summary for sermon {job.sermon_id} already pending")
            return False
        self._queue.append(job)
        self._save()
        logger.info(f"Queued summary for sermon {job.sermon_id}")
        self._kick()
        return True

    def retry_if_needed(self, sermon: Sermon) -> bool:
        """Queue a summary for a sermon whose summary is processing or failed."""
        if sermon.summary_status not in (ProcessingStatus.PROCESSING, ProcessingStatus.FAILED):
            return False
        if self._has_job_for(sermon.id):
            return False
        if sermon.transcript is None or not sermon.transcript.text.strip():
            logger.info(f"Cannot retry summary: no transcript for sermon {sermon.id}")
            return False
        return self.enqueue(self._job_for(sermon))

    def sweep_stuck_jobs(self) -> int:
        """Queue sermons stuck in ``processing`` longer than ``stuck_timeout``.

        A stuck sermon without a transcript is marked ``failed``. Returns the
        number of jobs queued.
        """
        threshold = self.clock.now() - self.stuck_timeout
        queued = 0
        for sermon in self.store.get_sermons_with_summary_status(ProcessingStatus.PROCESSING):
            if sermon.updated_at >= threshold:
                continue
            if sermon.transcript is None or not sermon.transcript.text.strip():
                logger.info(f"Stuck summary for sermon {sermon.id} has no transcript, failing it")
                sermon.summary_status = ProcessingStatus.FAILED
                self.store.save_sermon(sermon)
                continue
            if self.enqueue(self._job_for(sermon)):
                queued += 1
        return queued

    def cleanup_old_jobs(self) -> int:
        """Drop jobs created more than ``max_age`` ago. Returns the number dropped."""
        cutoff = self.clock.now() - self.max_age
        stale_queued = [j for j in self._queue if j.created_at < cutoff]
        stale_deferred = [jid for jid, (j, _) in self._deferred.items() if j.created_at < cutoff]
        if not stale_queued and not stale_deferred:
            return 0

        stale_ids = {j.id for j in stale_queued}
        self._queue = [j for j in self._queue if j.id not in stale_ids]
        for job_id in stale_deferred:
            _, handle = self._deferred.pop(job_id)
            handle.cancel()
        self._save()

        removed = len(stale_queued) + len(stale_deferred)
        logger.info(f"Cleaned up {removed} old pending summaries")
        return removed

    def _job_for(self, sermon: Sermon) -> PendingSummaryJob:
        return PendingSummaryJob(
            sermon_id=sermon.id,
            transcript=sermon.transcript.text,
            service_type=sermon.service_type,
            created_at=self.clock.now(),
        )

    # === Network ===

    def set_network_available(self, available: bool) -> None:
        was_available = self._network_available
        self._network_available = available
        if available and not was_available and self._queue:
            logger.info(f"Network available, processing {len(self._queue)} pending summaries")
            self._kick()

    def on_network_change(self, status: NetworkStatus) -> None:
        """NetworkMonitor listener."""
        self.set_network_available(status in (NetworkStatus.CONNECTED, NetworkStatus.EXPENSIVE))

    # === Processing ===

    def _kick(self) -> None:
        if not self._network_available or not self._queue or self._processing:
            return
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, pending summaries wait for the next trigger")
            return
        self._task = loop.create_task(self.process_queue())

    async def process_queue(self) -> None:
        """Work through the queue until it is empty or the network drops."""
        if self._processing:
            return
        self._processing = True
        try:
            while self._network_available and self._queue:
                await self._attempt(self._queue[0])
                if self._queue and self.pacing > 0:
                    await self.clock.sleep(self.pacing)
        finally:
            self._processing = False

    async def _attempt(self, job: PendingSummaryJob) -> None:
        if self.store.get_sermon(job.sermon_id) is None:
            logger.info(f"Sermon {job.sermon_id} no longer exists, dropping its summary job")
            self._remove(job.id)
            return
        if self.generator is None:
            self._handle_failure(
                job, SummaryServiceError("No summary generator configured", transient=False)
            )
            return

        logger.debug(f"Generating summary for sermon {job.sermon_id} (retry {job.retry_count})")
        try:
            generated = await asyncio.wait_for(
                self.generator.generate(job.transcript, job.service_type),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            self._handle_failure(job, SummaryServiceError("Summary request timed out"))
            return
        except Exception as e:
            self._handle_failure(job, e)
            return

        self._complete(job, generated, used_fallback=False)

    def _handle_failure(self, job: PendingSummaryJob, error: Exception) -> None:
        permanent = isinstance(error, SummaryServiceError) and not error.transient
        if permanent or job.retry_count >= self.max_retries:
            reason = "permanent failure" if permanent else "max retries reached"
            logger.warning(
                f"Summary for sermon {job.sermon_id} failed ({reason}: {error}), "
                "using basic summary"
            )
            self._complete(job, basic_summary(job.transcript, job.service_type), used_fallback=True)
            return

        self._remove(job.id)
        retried = job.with_incremented_retry(self.clock.now())
        delay = backoff_delay(retried.retry_count).total_seconds()
        if isinstance(error, RateLimitedError):
            delay = max(delay, error.retry_after)
        logger.warning(
            f"Summary for sermon {job.sermon_id} failed: {error}. "
            f"Retry {retried.retry_count}/{self.max_retries} in {delay / 60:.0f} minutes"
        )
        self._defer(retried, delay)

    def _complete(
        self, job: PendingSummaryJob, generated: GeneratedSummary, used_fallback: bool
    ) -> None:
        sermon = self.store.get_sermon(job.sermon_id)
        if sermon is None:
            logger.info(f"Sermon {job.sermon_id} deleted while its summary was generated")
            self._remove(job.id)
            return

        now = self.clock.now()
        previous = sermon.summary
        sermon.summary = Summary(
            text=generated.text,
            title=generated.title or "Sermon Summary",
            type=job.service_type,
            status=ProcessingStatus.COMPLETE,
            updated_at=now,
        )
        if previous is not None:
            sermon.summary.id = previous.id
            sermon.summary.remote_id = previous.remote_id
        sermon.summary_status = ProcessingStatus.COMPLETE
        sermon.touch(now)
        self.store.save_sermon(sermon)
        self._remove(job.id)

        logger.info(
            f"Summary completed for sermon {sermon.id}"
            + (" (basic fallback)" if used_fallback else "")
        )
        self._publish(SummaryCompletion(sermon.id, job.id, used_fallback))

    # === Completion Channel ===

    def _publish(self, event: SummaryCompletion) -> None:
        if self._events.full():
            dropped = self._events.get_nowait()
            logger.debug(f"Completion buffer full, dropped event for {dropped.sermon_id}")
        self._events.put_nowait(event)
        for future in self._waiters.pop(event.sermon_id, []):
            if not future.done():
                future.set_result(event)
        if self.notifier is not None:
            try:
                self.notifier(event.sermon_id)
            except Exception as e:
                logger.warning(f"Summary notifier failed: {e}", exc_info=True)

    async def completions(self) -> AsyncIterator[SummaryCompletion]:
        """Yield completion events in the order jobs finished.

        Events published while nobody is iterating are buffered up to
        ``completion_buffer``; beyond that the oldest are discarded.
        """
        while True:
            yield await self._events.get()

    def wait_for(self, sermon_id: str) -> "asyncio.Future[SummaryCompletion]":
        """Future resolved when the next summary for ``sermon_id`` completes."""
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(sermon_id, []).append(future)
        return future

    async def wait_idle(self) -> None:
        """Wait until no processing task is running."""
        while self._task is not None and not self._task.done():
            await self._task

    def close(self) -> None:
        """Cancel backoff timers. Deferred jobs stay persisted for the next start."""
        for _, handle in self._deferred.values():
            handle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
