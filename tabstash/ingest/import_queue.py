"""Bulk import queue with bounded job concurrency.

A job imports its records in sub-batches (import phase), then enriches the
imported ids in smaller sub-batches (processing phase). Progress is pushed to
observers after every phase transition and every sub-batch.

State machine
- ``queued -> importing -> processing -> completed | failed``
- A queued job is promoted only while fewer than ``max_concurrent_jobs`` jobs
  are active; promotion is FIFO
- ``completed`` requires zero failed records; imported records are never
  rolled back

Failure handling
- Per-record import failures are counted and listed, never retried
- A sub-batch whose import call raises is retried with capped linear backoff;
  when retries run out the batch and every unattempted record are counted
  failed and the import loop stops. Records already imported still go
  through processing and the job ends ``failed``
- An enrichment sub-batch that raises is counted failed and the job continues
- Cancellation moves a job straight to ``failed`` and frees its slot; the
  worker finishes its in-flight call and then stops without touching the job

Terminal jobs are purged ``job_retention_seconds`` after they finish.
"""

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Union

import structlog

from ..common.clock import Clock, SystemClock
from ..common.config import ImportQueueConfig
from ..common.errors import JobCancelled, JobNotFoundError, PartialBatchFailure, RetriesExhausted
from ..common.logging import ServiceLogger
from ..common.metrics import MetricsCollector
from ..gateway.rate_limiter import RateLimitGateway
from .base import (
    EnrichmentCollaborator,
    EnrichmentOutcome,
    ImportCollaborator,
    ImportOutcome,
    ImportRecord,
    outcome_summary,
)
from .retry_handler import RetryConfig, RetryHandler

logger = structlog.get_logger("ingest.import_queue")

CANCELLED_MESSAGE = "Job cancelled by user"
NOTHING_IMPORTED_MESSAGE = "No tabs were successfully imported"


class JobPhase(str, Enum):
    QUEUED = "queued"
    IMPORTING = "importing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({JobPhase.COMPLETED, JobPhase.FAILED})


@dataclass
class ImportProgress:
    """Progress snapshot handed to observers and API callers."""

    job_id: str
    user_id: str
    total_count: int
    phase: JobPhase = JobPhase.QUEUED
    successful_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_remaining: Optional[float] = None
    percent_complete: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def snapshot(self) -> "ImportProgress":
        return replace(self, errors=list(self.errors))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "user_id": self.user_id,
            "phase": self.phase.value,
            "total_count": self.total_count,
            "successful_count": self.successful_count,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_remaining": (
                round(self.estimated_remaining, 1) if self.estimated_remaining is not None else None
            ),
            "percent_complete": self.percent_complete,
        }


ProgressCallback = Callable[[ImportProgress], Any]


@dataclass
class ImportJob:
    """A bulk import job; mutated only by its worker and by cancellation."""

    id: str
    user_id: str
    records: List[ImportRecord]
    progress: ImportProgress
    log: ServiceLogger
    callbacks: List[ProgressCallback] = field(default_factory=list)
    cancelled: bool = False
    import_attempted: int = 0
    started_monotonic: Optional[float] = None
    finished_monotonic: Optional[float] = None
    task: Optional[asyncio.Task] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ImportQueueManager:
    """Runs bulk import jobs with bounded concurrency.

    Parameters
    - config: ``ImportQueueConfig`` with batch sizes, retry and retention
    - importer: ``ImportCollaborator`` that creates raw records
    - enricher: ``EnrichmentCollaborator`` for the processing phase
    - gateway: Optional gateway whose status is reported by
      ``get_queue_status``
    - clock, metrics: Injectable time source and metrics collector
    """

    def __init__(
        self,
        config: ImportQueueConfig,
        importer: ImportCollaborator,
        enricher: EnrichmentCollaborator,
        gateway: Optional[RateLimitGateway] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.importer = importer
        self.enricher = enricher
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.metrics = metrics

        self.max_concurrent_jobs = config.tabstash_import_max_concurrent_jobs
        self.import_batch_size = config.tabstash_import_batch_size
        self.processing_batch_size = config.tabstash_import_processing_batch_size
        self.job_retention_seconds = config.tabstash_import_job_retention_seconds
        self.purge_interval_seconds = config.tabstash_import_purge_interval_seconds

        self.retry_handler = RetryHandler(
            RetryConfig(
                max_attempts=config.tabstash_import_max_retries + 1,
                base_delay=config.tabstash_import_retry_base_delay_seconds,
                max_delay=config.tabstash_import_retry_max_delay_seconds,
                strategy="linear",
                should_retry=lambda e: not isinstance(e, JobCancelled),
            ),
            clock=self.clock,
        )

        self._jobs: Dict[str, ImportJob] = {}
        self._queue: Deque[str] = deque()
        self._active: Set[str] = set()
        self._sequence = itertools.count(1)
        self._purge_task: Optional[asyncio.Task] = None
        self._stopping = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the periodic purge of finished jobs."""
        self._stopping = False
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.create_task(self._purge_loop())
            logger.info("Import queue started", max_concurrent_jobs=self.max_concurrent_jobs)

    async def stop(self) -> None:
        """Cancel the purge task and every running worker."""
        self._stopping = True
        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        if self._purge_task is not None:
            tasks.append(self._purge_task)
            self._purge_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Import queue stopped", cancelled_tasks=len(tasks))

    async def _purge_loop(self) -> None:
        while True:
            await self.clock.sleep(self.purge_interval_seconds)
            try:
                self.cleanup_old_jobs()
            except Exception as e:
                logger.error("Job purge failed", error=str(e))

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------
    def submit(
        self,
        user_id: str,
        records: Sequence[Union[ImportRecord, Mapping[str, Any]]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Queue a job and return its id.

        Raises ``ValueError`` for an empty batch or a record without a URL.
        """
        if not user_id:
            raise ValueError("user_id is required")
        if not records:
            raise ValueError("No tabs provided for import")

        normalized = [ImportRecord.from_value(r) for r in records]
        seq = next(self._sequence)
        job_id = f"bulk-import-{seq}-{int(self.clock.wall_time().timestamp() * 1000)}"

        job = ImportJob(
            id=job_id,
            user_id=user_id,
            records=normalized,
            progress=ImportProgress(job_id=job_id, user_id=user_id, total_count=len(normalized)),
            log=ServiceLogger("ingest.import_queue", job_id=job_id, user_id=user_id),
        )
        if on_progress is not None:
            job.callbacks.append(on_progress)

        self._jobs[job_id] = job
        self._queue.append(job_id)
        job.log.info("Bulk import job queued", total_count=len(normalized), queue_position=len(self._queue))

        self._notify(job)
        self._promote()
        return job_id

    def subscribe(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        job = self._get_job(job_id)
        job.callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in job.callbacks:
                job.callbacks.remove(callback)

        return unsubscribe

    def get_job_status(self, job_id: str) -> Optional[ImportProgress]:
        job = self._jobs.get(job_id)
        return job.progress.snapshot() if job else None

    def get_user_jobs(self, user_id: str) -> List[ImportProgress]:
        """Snapshots of the user's jobs, newest first."""
        jobs = [job for job in self._jobs.values() if job.user_id == user_id]
        return [job.progress.snapshot() for job in reversed(jobs)]

    def get_queue_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "queued_jobs": len(self._queue),
            "processing_jobs": len(self._active),
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }
        if self.gateway is not None:
            status["rate_limit_status"] = {
                name: s.to_dict() for name, s in self.gateway.get_all_status().items()
            }
        return status

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> ImportProgress:
        """Wait until the job reaches a terminal phase and return its progress."""
        job = self._get_job(job_id)
        if timeout is None:
            await job.done.wait()
        else:
            await asyncio.wait_for(job.done.wait(), timeout)
        return job.progress.snapshot()

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued or running job; ``False`` if it already finished."""
        job = self._get_job(job_id)
        if job.progress.is_terminal:
            return False

        previous_phase = job.progress.phase
        job.cancelled = True
        if job_id in self._queue:
            self._queue.remove(job_id)

        progress = job.progress
        progress.phase = JobPhase.FAILED
        progress.errors.append(CANCELLED_MESSAGE)
        progress.completed_at = self.clock.wall_time()
        job.finished_monotonic = self.clock.now()
        job.done.set()

        job.log.info("Bulk import job cancelled", phase_reached=previous_phase.value)
        if self.metrics:
            self.metrics.record_import_job("cancelled")

        self._notify(job)
        self._release(job_id)
        return True

    def cleanup_old_jobs(self) -> int:
        """Drop terminal jobs older than the retention period."""
        now = self.clock.now()
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.progress.is_terminal
            and job.finished_monotonic is not None
            and now - job.finished_monotonic >= self.job_retention_seconds
        ]
        for job_id in expired:
            del self._jobs[job_id]

        if expired:
            logger.info("Purged finished import jobs", purged=len(expired), remaining=len(self._jobs))
        return len(expired)

    def _get_job(self, job_id: str) -> ImportJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown import job: {job_id}")
        return job

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _promote(self) -> None:
        if self._stopping:
            return
        while self._queue and len(self._active) < self.max_concurrent_jobs:
            job_id = self._queue.popleft()
            job = self._jobs.get(job_id)
            if job is None or job.cancelled:
                continue
            self._active.add(job_id)
            job.task = asyncio.create_task(self._run_job(job))
        self._update_active_gauge()

    def _release(self, job_id: str) -> None:
        self._active.discard(job_id)
        self._promote()

    def _update_active_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_import_active_jobs(len(self._active))

    async def _run_job(self, job: ImportJob) -> None:
        try:
            await self._execute(job)
        except JobCancelled:
            job.log.info("Worker stopped after cancellation")
        except Exception as e:
            if not job.cancelled:
                job.log.exception("Bulk import job crashed", error=str(e))
                self._finish(job, reason=f"Unexpected error: {e}")
        finally:
            self._release(job.id)

    def _check_cancelled(self, job: ImportJob) -> None:
        if job.cancelled:
            raise JobCancelled(job.id)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    async def _execute(self, job: ImportJob) -> None:
        progress = job.progress
        progress.phase = JobPhase.IMPORTING
        progress.started_at = self.clock.wall_time()
        job.started_monotonic = self.clock.now()
        job.log.info("Bulk import job started", total_count=progress.total_count)
        self._notify(job)

        imported_ids = await self._import_phase(job)
        self._check_cancelled(job)

        if not imported_ids:
            self._finish(job, reason=NOTHING_IMPORTED_MESSAGE)
            return

        progress.phase = JobPhase.PROCESSING
        self._notify(job)

        await self._processing_phase(job, imported_ids)
        self._check_cancelled(job)
        self._finish(job)

    async def _import_phase(self, job: ImportJob) -> List[str]:
        progress = job.progress
        imported_ids: List[str] = []
        batches = _chunks(job.records, self.import_batch_size)

        for index, batch in enumerate(batches, start=1):
            self._check_cancelled(job)
            try:
                outcomes = await self.retry_handler.execute_with_retry(
                    self._import_batch,
                    job,
                    batch,
                    operation_name=f"{job.id}:import_batch_{index}",
                )
            except RetriesExhausted as e:
                self._check_cancelled(job)
                remaining = progress.total_count - job.import_attempted
                job.import_attempted += remaining
                progress.failed_count += remaining
                progress.errors.append(f"Batch {index}: Max retries exceeded ({e.__cause__ or e})")
                job.log.error(
                    "Import batch failed after retries, failing remaining records",
                    batch=index,
                    attempts=e.attempts,
                    failed_records=remaining,
                )
                if self.metrics:
                    self.metrics.record_import_records("failed", remaining)
                self._notify(job)
                break

            self._check_cancelled(job)
            succeeded = 0
            for record, outcome in itertools.zip_longest(batch, outcomes):
                if record is None:
                    break
                if outcome is not None and outcome.success and outcome.record_id:
                    imported_ids.append(outcome.record_id)
                    succeeded += 1
                else:
                    error = outcome.error if outcome is not None and outcome.error else "No import result returned"
                    progress.errors.append(f"{record.url}: {error}")

            job.import_attempted += len(batch)
            progress.successful_count += succeeded
            progress.failed_count += len(batch) - succeeded
            if self.metrics:
                self.metrics.record_import_records("imported", succeeded)
                self.metrics.record_import_records("failed", len(batch) - succeeded)

            job.log.info(
                "Import batch completed",
                batch=index,
                total_batches=len(batches),
                **outcome_summary(list(outcomes)),
                progress=f"{job.import_attempted / progress.total_count * 100:.1f}%",
            )
            self._notify(job)

        return imported_ids

    async def _import_batch(self, job: ImportJob, batch: Sequence[ImportRecord]) -> List[ImportOutcome]:
        self._check_cancelled(job)
        return await self.importer.import_records(job.user_id, list(batch))

    async def _processing_phase(self, job: ImportJob, imported_ids: List[str]) -> None:
        progress = job.progress
        batches = _chunks(imported_ids, self.processing_batch_size)

        for index, batch in enumerate(batches, start=1):
            self._check_cancelled(job)
            try:
                await self._enrich_batch(job, list(batch), index)
                failed, errors = 0, []
            except PartialBatchFailure as failure:
                failed, errors = failure.failed_count, failure.errors or [str(failure)]
                job.log.warning("Processing batch had failures", batch=index, failed=failed)

            self._check_cancelled(job)
            progress.processed_count += len(batch)
            progress.failed_count += failed
            progress.errors.extend(errors)
            if self.metrics:
                self.metrics.record_import_records("enrichment_failed", failed)

            job.log.info(
                "Processing batch completed",
                batch=index,
                total_batches=len(batches),
                failed=failed,
                progress=f"{progress.processed_count / len(imported_ids) * 100:.1f}%",
            )
            self._notify(job)

    async def _enrich_batch(self, job: ImportJob, batch: List[str], index: int) -> EnrichmentOutcome:
        """Run one enrichment sub-batch; any failure becomes ``PartialBatchFailure``."""
        try:
            outcome = await self.enricher.enrich(job.user_id, batch, job.id)
        except Exception as e:
            raise PartialBatchFailure(
                f"Processing batch {index} failed: {e}",
                failed_count=len(batch),
            ) from e

        if outcome.failed:
            raise PartialBatchFailure(
                f"Processing batch {index}: {outcome.failed} records failed",
                failed_count=min(outcome.failed, len(batch)),
                errors=outcome.errors,
            )
        return outcome

    def _finish(self, job: ImportJob, reason: Optional[str] = None) -> None:
        progress = job.progress
        if reason:
            progress.errors.append(reason)

        succeeded = progress.failed_count == 0 and reason is None
        progress.phase = JobPhase.COMPLETED if succeeded else JobPhase.FAILED
        progress.completed_at = self.clock.wall_time()
        job.finished_monotonic = self.clock.now()
        job.done.set()

        if self.metrics:
            self.metrics.record_import_job(progress.phase.value)

        log = job.log.info if succeeded else job.log.warning
        log(
            "Bulk import job finished",
            phase=progress.phase.value,
            total_count=progress.total_count,
            successful_count=progress.successful_count,
            failed_count=progress.failed_count,
            duration_seconds=round(job.finished_monotonic - (job.started_monotonic or job.finished_monotonic), 3),
        )
        self._notify(job)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def _refresh_progress(self, job: ImportJob) -> None:
        """Recompute percent and estimated remaining seconds.

        Both phases weigh half. Records that failed import count as done for
        the processing half, so a job that runs to the end always totals 100.
        Percent is held at 99 until the final update.
        """
        progress = job.progress
        total_units = 2 * progress.total_count
        import_failed = job.import_attempted - progress.successful_count
        done_units = job.import_attempted + progress.processed_count + import_failed

        if progress.is_terminal:
            progress.estimated_remaining = 0.0
            if not job.cancelled:
                progress.percent_complete = 100
            return

        percent = min(99, (100 * done_units) // total_units)
        progress.percent_complete = max(progress.percent_complete, percent)

        if done_units and job.started_monotonic is not None:
            elapsed = self.clock.now() - job.started_monotonic
            progress.estimated_remaining = elapsed / done_units * (total_units - done_units)
        else:
            progress.estimated_remaining = None

    def _notify(self, job: ImportJob) -> None:
        self._refresh_progress(job)
        snapshot = job.progress.snapshot()
        for callback in list(job.callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                job.log.error("Progress callback failed", error=str(e))
