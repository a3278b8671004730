"""Queue worker that drives one review job through its pipeline stages."""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import NamedTuple

from sqlalchemy.exc import SQLAlchemyError

from repo_review.pipeline.aggregation import aggregate, flatten_findings, report_to_summary
from repo_review.pipeline.errors import (
    AnalyzerBackendUnavailableError,
    JobAbortedError,
    LeaseLostError,
    ReportPersistenceError,
    ReviewPipelineError,
    SubjectNotFoundError,
)
from repo_review.pipeline.models import (
    AggregateReport,
    JobStatus,
    JobUpdate,
    JobView,
    Lease,
    PerFileReport,
    SubjectStatus,
    SubjectView,
)
from repo_review.pipeline.orchestrator import ReviewOrchestrator
from repo_review.pipeline.progress import (
    PROGRESS_AGGREGATED,
    PROGRESS_CLONED,
    PROGRESS_COMPLETED,
    PROGRESS_ENUMERATED,
    PROGRESS_METADATA_FETCHED,
    ProgressListener,
    analysis_progress,
)
from repo_review.pipeline.queue import JobQueue
from repo_review.pipeline.state_machine import PipelineStage, StageTracker
from repo_review.pipeline.workspace import ClonedWorkspace, Cloner, FileEnumerator, SourceFile
from repo_review.storage.common import utc_now
from repo_review.storage.repository import ReviewRepository

logger = logging.getLogger(__name__)

FINDINGS_BATCH_SIZE = 100


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    lease_lost: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.lease_lost += other.lease_lost
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool
    lease_lost: bool


@dataclass(slots=True)
class JobContext:
    """Mutable state of one job attempt."""

    lease: Lease
    subject_id: str
    tracker: StageTracker
    cancel_event: threading.Event = field(default_factory=threading.Event)
    workspace: ClonedWorkspace | None = None
    files: list[SourceFile] = field(default_factory=list)
    reports: list[PerFileReport] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        return self.lease.job_id


class ReviewWorker:
    """Leases review jobs and runs clone, discovery, analysis and persistence."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        repository: ReviewRepository,
        orchestrator: ReviewOrchestrator,
        cloner: Cloner,
        enumerator: FileEnumerator,
        worker_id: str,
        listeners: Sequence[ProgressListener] = (),
        poll_interval_seconds: float = 2.0,
        file_concurrency: int = 1,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        if file_concurrency < 1:
            raise ValueError("file_concurrency must be >= 1")
        self.queue = queue
        self.repository = repository
        self.orchestrator = orchestrator
        self.cloner = cloner
        self.enumerator = enumerator
        self.worker_id = worker_id
        self.listeners = list(listeners)
        self.poll_interval_seconds = poll_interval_seconds
        self.file_concurrency = file_concurrency
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = threading.Event()
        self._current: JobContext | None = None
        self._shutdown_timer: threading.Timer | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        lease = self.queue.lease(worker_id=self.worker_id)
        if lease is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Worker %s leased job %s (attempt %s/%s)",
            self.worker_id,
            lease.job_id,
            lease.attempts_made,
            lease.max_attempts,
        )
        self._process(lease, summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
            install_signal_handlers: Stop gracefully on SIGINT/SIGTERM; only
                effective in the main thread.
        """

        total = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers(enabled=install_signal_handlers):
            try:
                while True:
                    if self.stop_requested:
                        return total
                    if max_jobs is not None and total.processed >= max_jobs:
                        return total

                    summary = self.run_once()
                    total.add(summary)

                    if summary.processed == 0:
                        consecutive_idle += 1
                        if consecutive_idle >= max_idle_polls:
                            return total
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue
                    consecutive_idle = 0
            finally:
                self._cancel_shutdown_timer()

    def request_stop(self, *, reason: str = "stop requested") -> None:
        """Finish the current job, then stop; abort it after the grace period."""

        if self.stop_requested:
            return
        self._stop_requested.set()
        current = self._current
        if current is None:
            return
        logger.warning(
            "Worker %s stopping (%s); job %s has %ss to finish",
            self.worker_id,
            reason,
            current.job_id,
            self.graceful_shutdown_seconds,
        )
        timer = threading.Timer(self.graceful_shutdown_seconds, self.abort_current_job)
        timer.daemon = True
        self._shutdown_timer = timer
        timer.start()

    def abort_current_job(self) -> bool:
        """Cancel the in-flight job; it fails this attempt and may be retried."""

        current = self._current
        if current is None:
            return False
        logger.warning("Aborting job %s on worker %s", current.job_id, self.worker_id)
        current.cancel_event.set()
        return True

    def _process(self, lease: Lease, summary: WorkerRunSummary) -> None:
        job = self.repository.get_job(lease.job_id)
        subject_id = str(lease.payload.get("subject_id") or (job.subject_id if job else ""))
        if job is not None and job.status in {JobStatus.COMPLETED, JobStatus.FAILED}:
            logger.warning(
                "Job %s is already %s; acknowledging duplicate delivery",
                lease.job_id,
                job.status.value,
            )
            self.queue.ack(lease.lease_token)
            return
        if job is None:
            self.repository.create_job(job_id=lease.job_id, subject_id=subject_id)

        ctx = JobContext(lease=lease, subject_id=subject_id, tracker=StageTracker(lease.job_id))
        self._current = ctx
        try:
            self._run_stages(ctx)
        except LeaseLostError as error:
            ctx.tracker.fail()
            summary.lease_lost = 1
            logger.warning("Job %s lost its lease; dropping results: %s", ctx.job_id, error)
        except ReviewPipelineError as error:
            outcome = self._fail(ctx, str(error), retryable=error.retryable)
            _apply_retry_outcome(summary, outcome)
        except Exception as error:
            logger.exception("Unexpected error while processing job %s", ctx.job_id)
            outcome = self._fail(ctx, f"{type(error).__name__}: {error}", retryable=True)
            _apply_retry_outcome(summary, outcome)
        else:
            summary.succeeded = 1
        finally:
            if ctx.workspace is not None:
                ctx.workspace.release()
            self._current = None

    def _run_stages(self, ctx: JobContext) -> None:
        subject = self._fetch_metadata(ctx)
        workspace = self._clone(ctx, subject)
        self._enumerate(ctx, workspace)
        self._analyze(ctx)
        report = self._aggregate(ctx)
        self._persist(ctx, report)
        self._complete(ctx, report)

    def _fetch_metadata(self, ctx: JobContext) -> SubjectView:
        subject = self.repository.get_subject(ctx.subject_id) if ctx.subject_id else None
        if subject is None:
            raise SubjectNotFoundError(ctx.subject_id)
        ctx.tracker.advance(PipelineStage.METADATA_FETCHED)
        existing = self.repository.get_job(ctx.job_id)
        self._write_job(
            ctx,
            JobUpdate(
                status=JobStatus.PROCESSING,
                progress=PROGRESS_METADATA_FETCHED,
                attempts_made=ctx.lease.attempts_made,
                started_at=utc_now() if existing is None or existing.started_at is None else None,
            ),
        )
        logger.info("Job %s: repository %s/%s", ctx.job_id, subject.repo_owner, subject.repo_name)
        return subject

    def _clone(self, ctx: JobContext, subject: SubjectView) -> ClonedWorkspace:
        self._ensure_not_aborted(ctx)
        self.repository.set_subject_status(ctx.subject_id, SubjectStatus.CLONING)
        workspace = self.cloner.clone(subject)
        ctx.workspace = workspace
        ctx.tracker.advance(PipelineStage.CLONED)
        self._write_job(ctx, JobUpdate(progress=PROGRESS_CLONED))
        return workspace

    def _enumerate(self, ctx: JobContext, workspace: ClonedWorkspace) -> None:
        self._ensure_not_aborted(ctx)
        self.repository.set_subject_status(ctx.subject_id, SubjectStatus.ANALYZING)
        ctx.files = self.enumerator.list(workspace.path)
        ctx.tracker.advance(PipelineStage.ENUMERATED)
        self._write_job(
            ctx,
            JobUpdate(
                total_units=len(ctx.files),
                processed_units=0,
                progress=PROGRESS_ENUMERATED,
            ),
        )
        logger.info("Job %s: %s files to analyze", ctx.job_id, len(ctx.files))

    def _analyze(self, ctx: JobContext) -> None:
        self._ensure_not_aborted(ctx)
        ctx.tracker.advance(PipelineStage.ANALYZING)
        ctx.reports = asyncio.run(self._analyze_files(ctx))
        self._ensure_not_aborted(ctx)

    async def _analyze_files(self, ctx: JobContext) -> list[PerFileReport]:
        total = len(ctx.files)
        semaphore = asyncio.Semaphore(self.file_concurrency)
        bookkeeping = asyncio.Lock()
        results: list[PerFileReport | None] = [None] * total
        processed = 0

        async def _one(index: int, source: SourceFile) -> None:
            nonlocal processed
            async with semaphore:
                logger.info("[%s/%s] Analyzing: %s", index + 1, total, source.relative_path)
                results[index] = await self.orchestrator.analyze_file(
                    source.content,
                    source.language,
                    path=source.relative_path,
                    cancel_event=ctx.cancel_event,
                )
            # SQLite writes run in a thread, one file at a time, in completion order.
            async with bookkeeping:
                processed += 1
                await asyncio.to_thread(self._file_done, ctx, processed=processed, total=total)

        tasks = [
            asyncio.create_task(_one(index, source)) for index, source in enumerate(ctx.files)
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            ctx.cancel_event.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [report for report in results if report is not None]

    def _file_done(self, ctx: JobContext, *, processed: int, total: int) -> None:
        if not self.queue.renew(ctx.lease.lease_token):
            ctx.cancel_event.set()
            raise LeaseLostError(f"Lease lost for job {ctx.job_id} after {processed} files")
        job = self._write_job(
            ctx,
            JobUpdate(
                processed_units=processed,
                progress=analysis_progress(processed, total),
            ),
        )
        self._notify(job)

    def _aggregate(self, ctx: JobContext) -> AggregateReport:
        report = aggregate(ctx.reports)
        ctx.tracker.advance(PipelineStage.AGGREGATED)
        if ctx.files and not any(item.succeeded_outcomes for item in ctx.reports):
            failures = [outcome for item in ctx.reports for outcome in item.failed_outcomes]
            transient = any(
                outcome.failure_class is not None and outcome.failure_class.is_transient
                for outcome in failures
            )
            last_error = failures[-1].error if failures else "no analyzer outcomes"
            raise AnalyzerBackendUnavailableError(
                f"All {len(failures)} analyzer calls failed; last error: {last_error}",
                transient=transient,
            )
        self._write_job(ctx, JobUpdate(progress=PROGRESS_AGGREGATED))
        return report

    def _persist(self, ctx: JobContext, report: AggregateReport) -> None:
        self._ensure_lease(ctx)
        try:
            self.repository.delete_aggregate(ctx.job_id)
            self.repository.insert_aggregate(
                job_id=ctx.job_id,
                subject_id=ctx.subject_id,
                summary=report_to_summary(report),
            )
        except SQLAlchemyError as error:
            raise ReportPersistenceError(f"Failed to save review results: {error}") from error

        rows = flatten_findings(
            job_id=ctx.job_id,
            subject_id=ctx.subject_id,
            reports=report.per_file_reports,
            category_for=self.orchestrator.category_for,
            on_unmapped=lambda specialty, path: self._record_unmapped(ctx, specialty, path),
        )
        inserted = 0
        for start in range(0, len(rows), FINDINGS_BATCH_SIZE):
            batch = rows[start : start + FINDINGS_BATCH_SIZE]
            try:
                inserted += self.repository.insert_findings(batch)
            except SQLAlchemyError as error:
                logger.error(
                    "Failed to insert findings batch %s for job %s: %s",
                    start // FINDINGS_BATCH_SIZE + 1,
                    ctx.job_id,
                    error,
                )
        logger.info("Job %s: inserted %s/%s findings", ctx.job_id, inserted, len(rows))
        ctx.tracker.advance(PipelineStage.PERSISTED)

    def _complete(self, ctx: JobContext, report: AggregateReport) -> None:
        job = self._write_job(
            ctx,
            JobUpdate(
                status=JobStatus.COMPLETED,
                progress=PROGRESS_COMPLETED,
                processed_units=len(ctx.files),
                completed_at=utc_now(),
                clear_error=True,
            ),
        )
        ctx.tracker.advance(PipelineStage.COMPLETED)
        self.repository.set_subject_status(ctx.subject_id, SubjectStatus.COMPLETED)
        self._notify(job)
        if not self.queue.ack(ctx.lease.lease_token):
            logger.warning("Job %s completed but its lease expired before ack", ctx.job_id)
        logger.info(
            "Job %s completed: files=%s issues=%s score=%s cost=$%.6f",
            ctx.job_id,
            report.total_files,
            report.total_issues,
            report.overall_score,
            report.estimated_cost_usd,
        )

    def _fail(self, ctx: JobContext, error: str, *, retryable: bool) -> RetryOutcome:
        ctx.tracker.fail()
        decision = self.queue.fail_retry(ctx.lease.lease_token, error, retryable=retryable)
        if decision.lease_lost:
            logger.warning("Job %s failed after losing its lease: %s", ctx.job_id, error)
            return RetryOutcome(retried=False, failed=False, lease_lost=True)

        if decision.will_retry:
            logger.warning(
                "Job %s attempt %s/%s failed, retrying in %.1fs: %s",
                ctx.job_id,
                decision.attempts_made,
                decision.max_attempts,
                decision.delay_seconds or 0.0,
                error,
            )
            job = self.repository.get_job(ctx.job_id)
            if job is not None and job.status not in {JobStatus.COMPLETED, JobStatus.FAILED}:
                self.repository.update_job(ctx.job_id, JobUpdate(error_message=error))
            return RetryOutcome(retried=True, failed=False, lease_lost=False)

        logger.error(
            "Job %s failed after %s attempt(s): %s",
            ctx.job_id,
            decision.attempts_made,
            error,
        )
        if self.repository.fail_abandoned_job(ctx.job_id, error):
            failed = self.repository.get_job(ctx.job_id)
            if failed is not None:
                self._notify(failed)
        return RetryOutcome(retried=False, failed=True, lease_lost=False)

    def _record_unmapped(self, ctx: JobContext, specialty: object, path: str) -> None:
        self.queue.record_event(
            ctx.job_id,
            "unmapped_specialty",
            {"specialty": str(getattr(specialty, "value", specialty)), "file_path": path},
        )

    def _write_job(self, ctx: JobContext, update: JobUpdate) -> JobView:
        self._ensure_lease(ctx)
        return self.repository.update_job(ctx.job_id, update)

    def _ensure_lease(self, ctx: JobContext) -> None:
        if not self.queue.is_lease_held(ctx.lease.lease_token):
            ctx.cancel_event.set()
            raise LeaseLostError(f"Lease lost for job {ctx.job_id}")

    def _ensure_not_aborted(self, ctx: JobContext) -> None:
        if ctx.cancel_event.is_set():
            raise JobAbortedError(f"Job {ctx.job_id} aborted")

    def _notify(self, job: JobView) -> None:
        for listener in self.listeners:
            try:
                listener.job_updated(job)
            except Exception:
                logger.exception("Progress listener failed for job %s", job.job_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_requested.wait(timeout=max(0.0, seconds))

    def _cancel_shutdown_timer(self) -> None:
        if self._shutdown_timer is not None:
            self._shutdown_timer.cancel()
            self._shutdown_timer = None

    @contextmanager
    def _signal_handlers(self, *, enabled: bool) -> Iterator[None]:
        if not enabled or threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class WorkerPool:
    """Runs several workers in threads over one shared queue handle."""

    def __init__(self, workers: Sequence[ReviewWorker]) -> None:
        if not workers:
            raise ValueError("WorkerPool needs at least one worker")
        self.workers = list(workers)

    def run(
        self,
        *,
        max_jobs_per_worker: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run every worker loop in its own thread and wait for all of them."""

        summaries: list[WorkerRunSummary] = [WorkerRunSummary() for _ in self.workers]

        def _run(index: int, worker: ReviewWorker) -> None:
            summaries[index] = worker.run_loop(
                max_jobs=max_jobs_per_worker,
                max_idle_polls=max_idle_polls,
                install_signal_handlers=False,
            )

        threads = [
            threading.Thread(
                target=_run,
                args=(index, worker),
                name=f"review-worker-{worker.worker_id}",
                daemon=True,
            )
            for index, worker in enumerate(self.workers)
        ]
        with self._signal_handlers():
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads):
                for thread in threads:
                    thread.join(timeout=0.2)

        total = WorkerRunSummary()
        for summary in summaries:
            total.add(summary)
        return total

    def request_stop(self, *, reason: str = "stop requested") -> None:
        for worker in self.workers:
            worker.request_stop(reason=reason)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            self.request_stop(reason=signal.Signals(signum).name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _apply_retry_outcome(summary: WorkerRunSummary, outcome: RetryOutcome) -> None:
    if outcome.retried:
        summary.retried = 1
    if outcome.failed:
        summary.failed = 1
    if outcome.lease_lost:
        summary.lease_lost = 1
