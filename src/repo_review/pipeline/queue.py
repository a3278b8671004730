"""Durable SQLite job queue with leasing, retry backoff and stalled recovery."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from repo_review.config import QueueSettings
from repo_review.pipeline.models import (
    EnqueueOptions,
    Lease,
    QueueCleanupResult,
    QueueEntryView,
    QueueEventView,
    QueueState,
    QueueStats,
    RetryDecision,
)
from repo_review.storage.alembic_runner import upgrade_head
from repo_review.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repo_review.storage.sqlmodel_models import QueueEntry, QueueEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExhaustedHook = Callable[[str, str], None]


def retry_delay_seconds(*, attempts_made: int, base_seconds: float, max_seconds: float) -> float:
    """Capped exponential backoff: base * 2^(attempts_made - 1), at most max_seconds."""

    exponent = max(0, attempts_made - 1)
    return float(min(max_seconds, base_seconds * (2**exponent)))


class JobQueue:
    """At-least-once job queue backed by SQLModel + SQLite.

    Exclusivity comes from leases: a claimed entry carries a random token that
    expires after `lease_seconds` unless renewed. Expired leases are recovered by
    the next `lease()` call.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        settings: QueueSettings | None = None,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
        on_exhausted: ExhaustedHook | None = None,
    ) -> None:
        self.db_path = db_path
        self.settings = settings or QueueSettings()
        self._clock = clock
        self._on_exhausted = on_exhausted
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._retrying = Retrying(
            stop=stop_after_attempt(self.settings.infra_retry_attempts),
            wait=wait_exponential(
                multiplier=0.05,
                max=self.settings.infra_retry_max_wait_seconds,
            ),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> QueueEntryView:
        """Add a job or update its waiting entry; one row per job id."""

        opts = options or EnqueueOptions(
            priority=self.settings.default_priority,
            max_attempts=self.settings.default_max_attempts,
        )
        if opts.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if opts.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        return self._call(self._enqueue_once, job_id, payload, opts)

    def _enqueue_once(
        self,
        job_id: str,
        payload: dict[str, Any],
        opts: EnqueueOptions,
    ) -> QueueEntryView:
        while True:
            now = self._clock()
            run_after = now + timedelta(seconds=opts.delay_seconds)
            payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)
            with Session(self.engine) as session:
                row = session.exec(
                    select(QueueEntry).where(QueueEntry.job_id == job_id),
                ).one_or_none()
                if row is None:
                    row = QueueEntry(
                        job_id=job_id,
                        payload_json=payload_json,
                        priority=opts.priority,
                        state=QueueState.WAITING.value,
                        attempts_made=0,
                        max_attempts=opts.max_attempts,
                        run_after=to_db_datetime(run_after),
                        created_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    )
                    session.add(row)
                    try:
                        session.flush()
                    except IntegrityError:
                        session.rollback()
                        continue
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="enqueued",
                        state_from=None,
                        state_to=QueueState.WAITING,
                        details={
                            "priority": opts.priority,
                            "max_attempts": opts.max_attempts,
                            "delay_seconds": opts.delay_seconds,
                        },
                    )
                    session.commit()
                    session.refresh(row)
                    logger.info("Enqueued job %s (priority=%s)", job_id, opts.priority)
                    return _to_entry_view(row)

                state = QueueState(row.state)
                if state == QueueState.WAITING:
                    row.payload_json = payload_json
                    row.priority = opts.priority
                    row.max_attempts = opts.max_attempts
                    row.run_after = to_db_datetime(run_after)
                elif state == QueueState.ACTIVE:
                    row.priority = opts.priority
                    row.max_attempts = opts.max_attempts
                else:
                    logger.info(
                        "Job %s already %s in queue; enqueue ignored",
                        job_id,
                        state.value,
                    )
                    return _to_entry_view(row)

                row.updated_at = to_db_datetime(now)
                session.add(row)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="enqueue_updated",
                    state_from=state,
                    state_to=state,
                    details={"priority": opts.priority, "max_attempts": opts.max_attempts},
                )
                session.commit()
                session.refresh(row)
                return _to_entry_view(row)

    def lease(self, *, worker_id: str) -> Lease | None:
        """Recover stalled entries, then atomically claim the best ready entry."""

        self.recover_stalled()
        return self._call(self._claim_next, worker_id)

    def _claim_next(self, worker_id: str) -> Lease | None:
        while True:
            now = self._clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueEntry)
                    .where(
                        QueueEntry.state == QueueState.WAITING.value,
                        QueueEntry.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueEntry.priority).asc(),
                        col(QueueEntry.run_after).asc(),
                        col(QueueEntry.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                token = uuid4().hex
                expires_at = now + timedelta(seconds=self.settings.lease_seconds)
                result = session.exec(
                    sa_update(QueueEntry)
                    .where(
                        col(QueueEntry.job_id) == candidate.job_id,
                        col(QueueEntry.state) == QueueState.WAITING.value,
                        col(QueueEntry.attempts_made) == candidate.attempts_made,
                    )
                    .values(
                        state=QueueState.ACTIVE.value,
                        attempts_made=candidate.attempts_made + 1,
                        lease_token=token,
                        lease_expires_at=to_db_datetime(expires_at),
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(QueueEntry).where(QueueEntry.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="leased",
                    state_from=QueueState.WAITING,
                    state_to=QueueState.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempts_made},
                )
                session.commit()
                return Lease(
                    job_id=claimed.job_id,
                    lease_token=token,
                    worker_id=worker_id,
                    payload=_load_json(claimed.payload_json),
                    attempts_made=claimed.attempts_made,
                    max_attempts=claimed.max_attempts,
                    lease_expires_at=expires_at,
                )

    def renew(self, lease_token: str) -> bool:
        """Extend the visibility timeout; False when the lease is no longer held."""

        return self._call(self._renew_once, lease_token)

    def _renew_once(self, lease_token: str) -> bool:
        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.lease_token) == lease_token,
                    col(QueueEntry.state) == QueueState.ACTIVE.value,
                    col(QueueEntry.lease_expires_at) > to_db_datetime(now),
                )
                .values(
                    lease_expires_at=to_db_datetime(
                        now + timedelta(seconds=self.settings.lease_seconds),
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def is_lease_held(self, lease_token: str) -> bool:
        """True while the lease is active and unexpired."""

        return self._call(self._is_lease_held_once, lease_token)

    def _is_lease_held_once(self, lease_token: str) -> bool:
        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueEntry.job_id).where(
                    QueueEntry.lease_token == lease_token,
                    QueueEntry.state == QueueState.ACTIVE.value,
                    col(QueueEntry.lease_expires_at) > to_db_datetime(now),
                ),
            ).one_or_none()
        return row is not None

    def ack(self, lease_token: str) -> bool:
        """Mark the leased entry completed; False when the lease was lost."""

        return self._call(self._ack_once, lease_token)

    def _ack_once(self, lease_token: str) -> bool:
        now = self._clock()
        with Session(self.engine) as session:
            row = self._held_row(session=session, lease_token=lease_token, now=now)
            if row is None:
                return False
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.job_id) == row.job_id,
                    col(QueueEntry.lease_token) == lease_token,
                    col(QueueEntry.state) == QueueState.ACTIVE.value,
                )
                .values(
                    state=QueueState.COMPLETED.value,
                    lease_token=None,
                    lease_expires_at=None,
                    last_error=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type="completed",
                state_from=QueueState.ACTIVE,
                state_to=QueueState.COMPLETED,
                details={"attempt": row.attempts_made},
            )
            session.commit()
            return True

    def fail_retry(
        self,
        lease_token: str,
        error: str,
        *,
        retryable: bool = True,
    ) -> RetryDecision:
        """Requeue with backoff while attempts remain, otherwise fail permanently."""

        return self._call(self._fail_retry_once, lease_token, error, retryable)

    def _fail_retry_once(self, lease_token: str, error: str, retryable: bool) -> RetryDecision:
        now = self._clock()
        with Session(self.engine) as session:
            row = self._held_row(session=session, lease_token=lease_token, now=now)
            if row is None:
                return RetryDecision(
                    will_retry=False,
                    attempts_made=0,
                    max_attempts=0,
                    lease_lost=True,
                )

            will_retry = retryable and row.attempts_made < row.max_attempts
            delay: float | None = None
            run_after: datetime | None = None
            if will_retry:
                delay = retry_delay_seconds(
                    attempts_made=row.attempts_made,
                    base_seconds=self.settings.retry_base_seconds,
                    max_seconds=self.settings.retry_max_seconds,
                )
                run_after = now + timedelta(seconds=delay)
                values: dict[str, Any] = {
                    "state": QueueState.WAITING.value,
                    "run_after": to_db_datetime(run_after),
                    "finished_at": None,
                }
                target = QueueState.WAITING
                event_type = "retry_scheduled"
            else:
                values = {
                    "state": QueueState.FAILED.value,
                    "finished_at": to_db_datetime(now),
                }
                target = QueueState.FAILED
                event_type = "failed"

            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.job_id) == row.job_id,
                    col(QueueEntry.lease_token) == lease_token,
                    col(QueueEntry.state) == QueueState.ACTIVE.value,
                )
                .values(
                    lease_token=None,
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return RetryDecision(
                    will_retry=False,
                    attempts_made=row.attempts_made,
                    max_attempts=row.max_attempts,
                    lease_lost=True,
                )
            details: dict[str, object] = {
                "attempt": row.attempts_made,
                "max_attempts": row.max_attempts,
                "retryable": retryable,
                "error": error,
            }
            if run_after is not None:
                details["run_after"] = run_after.isoformat()
                details["delay_seconds"] = delay
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type=event_type,
                state_from=QueueState.ACTIVE,
                state_to=target,
                details=details,
            )
            session.commit()
            return RetryDecision(
                will_retry=will_retry,
                attempts_made=row.attempts_made,
                max_attempts=row.max_attempts,
                delay_seconds=delay,
                run_after=run_after,
            )

    def recover_stalled(self) -> int:
        """Return expired active entries to waiting, or fail them when attempts are spent."""

        recovered, exhausted = self._call(self._recover_stalled_once)
        if self._on_exhausted is not None:
            for job_id, error in exhausted:
                try:
                    self._on_exhausted(job_id, error)
                except Exception:
                    logger.exception("Exhausted-entry hook failed for job %s", job_id)
        return recovered

    def _recover_stalled_once(self) -> tuple[int, list[tuple[str, str]]]:
        now = self._clock()
        recovered = 0
        exhausted: list[tuple[str, str]] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueEntry).where(
                    QueueEntry.state == QueueState.ACTIVE.value,
                    col(QueueEntry.lease_expires_at) <= to_db_datetime(now),
                ),
            ).all()
            for row in rows:
                error = f"lease expired (worker={row.worker_id}, attempt={row.attempts_made})"
                spent = row.attempts_made >= row.max_attempts
                target = QueueState.FAILED if spent else QueueState.WAITING
                result = session.exec(
                    sa_update(QueueEntry)
                    .where(
                        col(QueueEntry.job_id) == row.job_id,
                        col(QueueEntry.lease_token) == row.lease_token,
                        col(QueueEntry.state) == QueueState.ACTIVE.value,
                    )
                    .values(
                        state=target.value,
                        lease_token=None,
                        lease_expires_at=None,
                        last_error=error,
                        run_after=to_db_datetime(now),
                        finished_at=to_db_datetime(now) if spent else None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="stalled_failed" if spent else "stalled_recovered",
                    state_from=QueueState.ACTIVE,
                    state_to=target,
                    details={"worker_id": row.worker_id, "attempt": row.attempts_made},
                )
                recovered += 1
                if spent:
                    exhausted.append((row.job_id, error))
            session.commit()
        if recovered:
            logger.warning("Recovered %s stalled queue entries", recovered)
        return recovered, exhausted

    def stats(self) -> QueueStats:
        """Counts per state; waiting entries not yet runnable count as delayed."""

        return self._call(self._stats_once)

    def _stats_once(self) -> QueueStats:
        now = self._clock()
        with Session(self.engine) as session:
            grouped = session.exec(
                select(QueueEntry.state, func.count()).group_by(QueueEntry.state),
            ).all()
            delayed = session.exec(
                select(func.count()).where(
                    QueueEntry.state == QueueState.WAITING.value,
                    QueueEntry.run_after > to_db_datetime(now),
                ),
            ).one()
        counts = {state: int(count) for state, count in grouped}
        delayed_count = int(delayed)
        waiting = counts.get(QueueState.WAITING.value, 0) - delayed_count
        active = counts.get(QueueState.ACTIVE.value, 0)
        completed = counts.get(QueueState.COMPLETED.value, 0)
        failed = counts.get(QueueState.FAILED.value, 0)
        return QueueStats(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed_count,
            total=waiting + active + completed + failed + delayed_count,
        )

    def get(self, job_id: str) -> QueueEntryView | None:
        """Return one queue entry."""

        return self._call(self._get_once, job_id)

    def _get_once(self, job_id: str) -> QueueEntryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueEntry).where(QueueEntry.job_id == job_id),
            ).one_or_none()
        return _to_entry_view(row) if row is not None else None

    def list_entries(
        self,
        *,
        state: QueueState | None = None,
        limit: int = 50,
    ) -> list[QueueEntryView]:
        """List recent entries, optionally filtered by state."""

        return self._call(self._list_entries_once, state, limit)

    def _list_entries_once(self, state: QueueState | None, limit: int) -> list[QueueEntryView]:
        with Session(self.engine) as session:
            statement = select(QueueEntry).order_by(col(QueueEntry.created_at).desc()).limit(limit)
            if state is not None:
                statement = statement.where(QueueEntry.state == state.value)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in rows]

    def events(self, job_id: str) -> list[QueueEventView]:
        """Return the audit trail of one entry, oldest first."""

        return self._call(self._events_once, job_id)

    def _events_once(self, job_id: str) -> list[QueueEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueEvent)
                .where(QueueEvent.job_id == job_id)
                .order_by(col(QueueEvent.created_at).asc(), col(QueueEvent.id).asc()),
            ).all()
        return [
            QueueEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                state_from=QueueState(row.state_from) if row.state_from is not None else None,
                state_to=QueueState(row.state_to) if row.state_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json(row.details_json),
            )
            for row in rows
        ]

    def record_event(
        self,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append a non-transition audit event to an existing entry."""

        def _record() -> None:
            with Session(self.engine) as session:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    state_from=None,
                    state_to=None,
                    details=details,
                )
                session.commit()

        self._call(_record)

    def remove(self, job_id: str) -> bool:
        """Delete an entry and its events; active entries cannot be removed."""

        return self._call(self._remove_once, job_id)

    def _remove_once(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueEntry).where(QueueEntry.job_id == job_id),
            ).one_or_none()
            if row is None:
                return False
            if row.state == QueueState.ACTIVE.value:
                raise RuntimeError(f"Queue entry is active and cannot be removed: {job_id}")
            result = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.job_id) == job_id,
                    col(QueueEntry.state) != QueueState.ACTIVE.value,
                ),
            )
            session.commit()
        return result.rowcount == 1

    def clean(
        self,
        *,
        completed_older_than: timedelta | None = None,
        failed_older_than: timedelta | None = None,
    ) -> QueueCleanupResult:
        """Remove finished entries past their retention window."""

        completed_age = (
            completed_older_than
            if completed_older_than is not None
            else timedelta(days=self.settings.completed_retention_days)
        )
        failed_age = (
            failed_older_than
            if failed_older_than is not None
            else timedelta(days=self.settings.failed_retention_days)
        )
        result = self._call(self._clean_once, completed_age, failed_age)
        logger.info(
            "Queue cleanup removed %s completed and %s failed entries",
            result.completed_removed,
            result.failed_removed,
        )
        return result

    def _clean_once(self, completed_age: timedelta, failed_age: timedelta) -> QueueCleanupResult:
        now = self._clock()
        with Session(self.engine) as session:
            completed = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.state) == QueueState.COMPLETED.value,
                    col(QueueEntry.finished_at) < to_db_datetime(now - completed_age),
                ),
            )
            failed = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.state) == QueueState.FAILED.value,
                    col(QueueEntry.finished_at) < to_db_datetime(now - failed_age),
                ),
            )
            session.commit()
        return QueueCleanupResult(
            completed_removed=completed.rowcount,
            failed_removed=failed.rowcount,
        )

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return self._retrying(fn, *args)

    def _held_row(self, *, session: Session, lease_token: str, now: datetime) -> QueueEntry | None:
        return session.exec(
            select(QueueEntry).where(
                QueueEntry.lease_token == lease_token,
                QueueEntry.state == QueueState.ACTIVE.value,
                col(QueueEntry.lease_expires_at) > to_db_datetime(now),
            ),
        ).one_or_none()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        state_from: QueueState | None,
        state_to: QueueState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueEvent(
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_entry_view(row: QueueEntry) -> QueueEntryView:
    return QueueEntryView(
        job_id=row.job_id,
        payload=_load_json(row.payload_json),
        priority=row.priority,
        state=QueueState(row.state),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        lease_token=row.lease_token,
        lease_expires_at=optional_utc(row.lease_expires_at),
        worker_id=row.worker_id,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )
