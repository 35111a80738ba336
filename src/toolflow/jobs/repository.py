"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from toolflow.jobs.models import (
    CLAIMABLE_STATUSES,
    MAX_RETRIES,
    TERMINAL_STATUSES,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    WorkflowDefinition,
)
from toolflow.storage.alembic_runner import upgrade_head
from toolflow.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from toolflow.storage.sqlmodel_models import JobEvent, ProcessingJob

_CLAIMABLE_VALUES = tuple(sorted(status.value for status in CLAIMABLE_STATUSES))


class JobRepository:
    """Job persistence facade.

    Every transition is one conditional ``UPDATE`` guarded by the expected prior
    status; a guard miss returns ``False``/``None`` instead of raising, so racing
    callers can treat it as "someone else got there first".
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(
        self,
        user_id: str,
        workflow_definition: WorkflowDefinition | Mapping[str, Any],
    ) -> JobView:
        """Validate the workflow and persist a Queued job.

        Raises ValidationError before touching the database when the definition is
        malformed.
        """

        if isinstance(workflow_definition, WorkflowDefinition):
            workflow_definition.validate()
            definition = workflow_definition
        else:
            definition = WorkflowDefinition.from_dict(workflow_definition)

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            row = ProcessingJob(
                job_id=job_id,
                user_id=user_id,
                workflow_definition=dump_json(definition.to_dict()),
                status=JobStatus.QUEUED.value,
                start_time=now,
                end_time=None,
                final_output=None,
                error_message=None,
                retry_count=0,
                worker_id=None,
                run_after=now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # No relationship() links the tables; the job row must hit the DB before its event.
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={"steps": len(definition.steps)},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def find_by_id(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessingJob).where(ProcessingJob.job_id == job_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def find_by_user(self, user_id: str, limit: int = 50) -> list[JobView]:
        """Most recent jobs of one user first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessingJob)
                .where(ProcessingJob.user_id == user_id)
                .order_by(col(ProcessingJob.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def find_queued_jobs(self, limit: int = 100) -> list[JobView]:
        """Claimable jobs (Queued, or Retrying past their back-off), oldest first."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessingJob)
                .where(
                    col(ProcessingJob.status).in_(_CLAIMABLE_VALUES),
                    col(ProcessingJob.run_after) <= to_db_datetime(now),
                )
                .order_by(col(ProcessingJob.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def claim_job(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Atomically move a claimable job to Running; ``None`` when not claimable."""

        now = utc_now()
        with Session(self.engine) as session:
            previous = session.exec(
                select(ProcessingJob.status).where(ProcessingJob.job_id == job_id),
            ).one_or_none()
            result = session.exec(
                sa_update(ProcessingJob)
                .where(
                    col(ProcessingJob.job_id) == job_id,
                    col(ProcessingJob.status).in_(_CLAIMABLE_VALUES),
                    col(ProcessingJob.run_after) <= to_db_datetime(now),
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    start_time=to_db_datetime(now),
                    end_time=None,
                    worker_id=worker_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(
                select(ProcessingJob).where(ProcessingJob.job_id == job_id),
            ).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus(previous) if previous is not None else None,
                status_to=JobStatus.RUNNING,
                details={"worker_id": worker_id, "retry_count": claimed.retry_count},
            )
            session.commit()
            session.refresh(claimed)
            return _to_job_view(claimed)

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected_status: JobStatus | None = None,
    ) -> bool:
        """Set a non-terminal status, optionally only from ``expected_status``.

        Terminal states carry an output or an error, so they go through
        :meth:`update_output` and :meth:`update_error`.
        """

        if status in TERMINAL_STATUSES:
            raise ValueError(
                f"update_status cannot set terminal status {status.value}; "
                "use update_output or update_error",
            )
        now = utc_now()
        with Session(self.engine) as session:
            statement = sa_update(ProcessingJob).where(col(ProcessingJob.job_id) == job_id)
            if expected_status is not None:
                statement = statement.where(col(ProcessingJob.status) == expected_status.value)
            result = session.exec(
                statement.values(status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="status_changed",
                status_from=expected_status,
                status_to=status,
                details={},
            )
            session.commit()
            return True

    def update_output(
        self,
        job_id: str,
        output: Mapping[str, Any],
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Mark a running job as succeeded with its final output."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                self._running_guard(job_id=job_id, worker_id=worker_id).values(
                    status=JobStatus.SUCCESS.value,
                    final_output=dump_json(dict(output)),
                    error_message=None,
                    end_time=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="succeeded",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.SUCCESS,
                details={"steps": len(output)},
            )
            session.commit()
            return True

    def update_error(
        self,
        job_id: str,
        error_message: str,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Mark a running job as permanently failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                self._running_guard(job_id=job_id, worker_id=worker_id).values(
                    status=JobStatus.FAILED.value,
                    final_output=None,
                    error_message=error_message,
                    end_time=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={"error_message": error_message},
            )
            session.commit()
            return True

    def increment_retry_count(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        error_message: str,
        run_after: datetime | None = None,
        worker_id: str | None = None,
        max_retries: int = MAX_RETRIES,
    ) -> bool:
        """Move a running job to Retrying while its retry budget lasts."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                self._running_guard(job_id=job_id, worker_id=worker_id)
                .where(col(ProcessingJob.retry_count) < max_retries)
                .values(
                    status=JobStatus.RETRYING.value,
                    retry_count=col(ProcessingJob.retry_count) + 1,
                    error_message=error_message,
                    run_after=to_db_datetime(run_after or now),
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.RETRYING,
                details={
                    "error_message": error_message,
                    "run_after": to_utc_aware_datetime(run_after or now).isoformat(),
                },
            )
            session.commit()
            return True

    def release_job(self, job_id: str, *, worker_id: str) -> bool:
        """Hand a Running job owned by ``worker_id`` back to the Queued intake.

        Used when the attempt's outcome could not be written. ``retry_count`` is
        left alone since the workflow itself did not fail.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                self._running_guard(job_id=job_id, worker_id=worker_id).values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    run_after=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="released",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={"worker_id": worker_id},
            )
            session.commit()
            return True

    def recover_stale_running_jobs(
        self,
        *,
        stale_after: timedelta,
        max_retries: int = MAX_RETRIES,
    ) -> int:
        """Release Running jobs whose owner stopped updating them.

        Jobs with retry budget left go back to Retrying, the rest end Failed.
        Returns how many rows were recovered.
        """

        now = utc_now()
        threshold = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            candidates = session.exec(
                select(ProcessingJob).where(
                    ProcessingJob.status == JobStatus.RUNNING.value,
                    col(ProcessingJob.updated_at) <= threshold,
                ),
            ).all()
            for candidate in candidates:
                message = f"Worker {candidate.worker_id} stopped responding while running job"
                exhausted = candidate.retry_count >= max_retries
                values: dict[str, Any] = {
                    "error_message": message,
                    "worker_id": None,
                    "updated_at": to_db_datetime(now),
                }
                if exhausted:
                    target = JobStatus.FAILED
                    values.update(status=target.value, end_time=to_db_datetime(now))
                else:
                    target = JobStatus.RETRYING
                    values.update(
                        status=target.value,
                        retry_count=candidate.retry_count + 1,
                        run_after=to_db_datetime(now),
                    )
                result = session.exec(
                    sa_update(ProcessingJob)
                    .where(
                        col(ProcessingJob.job_id) == candidate.job_id,
                        col(ProcessingJob.status) == JobStatus.RUNNING.value,
                        col(ProcessingJob.updated_at) <= threshold,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    job_id=candidate.job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=target,
                    details={"worker_id": candidate.worker_id},
                )
            session.commit()
        return recovered

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(ProcessingJob).where(ProcessingJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None

            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json) or {},
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def _running_guard(self, *, job_id: str, worker_id: str | None):
        statement = sa_update(ProcessingJob).where(
            col(ProcessingJob.job_id) == job_id,
            col(ProcessingJob.status) == JobStatus.RUNNING.value,
        )
        if worker_id is not None:
            statement = statement.where(col(ProcessingJob.worker_id) == worker_id)
        return statement

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _to_job_view(row: ProcessingJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        workflow_definition=load_json_object(row.workflow_definition) or {},
        status=JobStatus(row.status),
        start_time=to_utc_aware_datetime(row.start_time),
        end_time=optional_utc(row.end_time),
        final_output=load_json_object(row.final_output),
        error_message=row.error_message,
        retry_count=row.retry_count,
        worker_id=row.worker_id,
        run_after=to_utc_aware_datetime(row.run_after),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
