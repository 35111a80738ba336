from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import allure
import pytest
from sqlalchemy import inspect, text

from toolflow.errors import ValidationError
from toolflow.jobs.models import JobStatus, WorkflowDefinition
from toolflow.jobs.repository import JobRepository
from toolflow.storage.common import utc_now

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Job Lifecycle Persistence"),
]

WorkflowBuilder = Callable[[str, str], dict[str, Any]]


def test_alembic_schema_is_initialized_to_head(job_repository: JobRepository) -> None:
    with job_repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261012_0001"

    tables = set(inspect(job_repository.engine).get_table_names())
    assert {"processing_jobs", "job_events", "mcp_tools", "queue_messages"} <= tables


def test_create_persists_queued_job(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.end_time is None
    assert job.final_output is None
    assert job.error_message is None
    assert job.workflow_definition == two_step_workflow("t1", "t2")
    assert job.created_at.tzinfo is not None

    found = job_repository.find_by_id(job.job_id)
    assert found is not None
    assert found.job_id == job.job_id
    assert found.user_id == "user-1"


def test_create_writes_job_before_its_created_event(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    with job_repository.engine.connect() as connection:
        assert connection.execute(text("PRAGMA foreign_keys")).scalar_one() == 1

    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    transitions = [
        (event.event_type, event.status_from, event.status_to) for event in details.events
    ]
    assert transitions == [("created", None, JobStatus.QUEUED)]
    assert details.events[0].details == {"steps": 2}


def test_create_accepts_parsed_definition(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    definition = WorkflowDefinition.from_dict(two_step_workflow("t1", "t2"))

    job = job_repository.create("user-1", definition)

    assert job.workflow_definition == definition.to_dict()


def test_create_rejects_invalid_workflow_without_persisting(
    job_repository: JobRepository,
) -> None:
    invalid = {
        "steps": [
            {"id": "a", "tool_id": "t1", "action": "foo", "depends_on": ["b"]},
            {"id": "b", "tool_id": "t1", "action": "foo"},
        ],
    }

    with pytest.raises(ValidationError):
        job_repository.create("user-1", invalid)

    assert job_repository.find_by_user("user-1") == []
    assert job_repository.find_queued_jobs() == []


def test_find_by_id_returns_none_for_unknown_job(job_repository: JobRepository) -> None:
    assert job_repository.find_by_id("missing") is None


def test_find_queued_jobs_is_fifo_and_skips_non_claimable(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    first = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    second = job_repository.create("user-2", two_step_workflow("t1", "t2"))
    third = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    assert job_repository.claim_job(job_id=second.job_id, worker_id="worker-a") is not None

    queued = job_repository.find_queued_jobs(limit=10)
    assert [job.job_id for job in queued] == [first.job_id, third.job_id]
    assert [job.job_id for job in job_repository.find_queued_jobs(limit=1)] == [first.job_id]

    by_user = job_repository.find_by_user("user-1")
    assert [job.job_id for job in by_user] == [third.job_id, first.job_id]


def test_claim_job_moves_to_running_once(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    claimed = job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")
    assert claimed is not None
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-a"

    assert job_repository.claim_job(job_id=job.job_id, worker_id="worker-b") is None
    assert job_repository.claim_job(job_id="missing", worker_id="worker-b") is None
    current = job_repository.find_by_id(job.job_id)
    assert current is not None
    assert current.worker_id == "worker-a"


def test_concurrent_claims_have_exactly_one_winner(
    db_path: Path,
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    contenders = 8
    barrier = threading.Barrier(contenders)
    winners: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        repository = JobRepository(db_path)
        try:
            barrier.wait(timeout=5)
            claimed = repository.claim_job(job_id=job.job_id, worker_id=worker_id)
            if claimed is not None:
                with lock:
                    winners.append(worker_id)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [
        threading.Thread(target=_claim, args=(f"worker-{index}",)) for index in range(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(winners) == 1
    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    assert details.job.worker_id == winners[0]
    assert [event.event_type for event in details.events].count("claimed") == 1


def test_update_output_is_terminal_and_clears_error(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    assert job_repository.update_output(job.job_id, {"a": 1}) is False

    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")
    assert job_repository.increment_retry_count(job.job_id, error_message="boom") is True
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")

    assert job_repository.update_output(job.job_id, {"a": 1}, worker_id="worker-b") is False
    assert job_repository.update_output(job.job_id, {"a": 1}, worker_id="worker-a") is True

    done = job_repository.find_by_id(job.job_id)
    assert done is not None
    assert done.status == JobStatus.SUCCESS
    assert done.final_output == {"a": 1}
    assert done.error_message is None
    assert done.end_time is not None
    assert done.end_time >= done.start_time

    assert job_repository.update_error(job.job_id, "late failure") is False
    assert job_repository.claim_job(job_id=job.job_id, worker_id="worker-b") is None


def test_update_error_marks_failed_without_output(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")

    assert job_repository.update_error(job.job_id, "Tool t2 is unavailable") is True

    failed = job_repository.find_by_id(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.final_output is None
    assert failed.error_message == "Tool t2 is unavailable"
    assert failed.end_time is not None
    assert job_repository.update_output(job.job_id, {"a": 1}) is False


def test_retry_count_never_exceeds_bound(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    for attempt in range(1, 4):
        assert job_repository.claim_job(job_id=job.job_id, worker_id="worker-a") is not None
        assert job_repository.increment_retry_count(
            job.job_id,
            error_message=f"attempt {attempt} failed",
            worker_id="worker-a",
            max_retries=3,
        )
        retrying = job_repository.find_by_id(job.job_id)
        assert retrying is not None
        assert retrying.status == JobStatus.RETRYING
        assert retrying.retry_count == attempt
        assert retrying.worker_id is None

    assert job_repository.claim_job(job_id=job.job_id, worker_id="worker-a") is not None
    assert (
        job_repository.increment_retry_count(
            job.job_id,
            error_message="attempt 4 failed",
            worker_id="worker-a",
            max_retries=3,
        )
        is False
    )
    current = job_repository.find_by_id(job.job_id)
    assert current is not None
    assert current.retry_count == 3
    assert current.status == JobStatus.RUNNING


def test_retrying_job_waits_for_run_after(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")
    job_repository.increment_retry_count(
        job.job_id,
        error_message="boom",
        run_after=utc_now() + timedelta(hours=1),
    )

    assert job_repository.find_queued_jobs() == []
    assert job_repository.claim_job(job_id=job.job_id, worker_id="worker-a") is None


def test_update_status_honours_expected_status(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    assert (
        job_repository.update_status(
            job.job_id,
            JobStatus.RETRYING,
            expected_status=JobStatus.RUNNING,
        )
        is False
    )
    assert (
        job_repository.update_status(
            job.job_id,
            JobStatus.RETRYING,
            expected_status=JobStatus.QUEUED,
        )
        is True
    )
    updated = job_repository.find_by_id(job.job_id)
    assert updated is not None
    assert updated.status == JobStatus.RETRYING
    assert updated.updated_at >= job.updated_at


@pytest.mark.parametrize("terminal", [JobStatus.SUCCESS, JobStatus.FAILED])
def test_update_status_refuses_terminal_states(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
    terminal: JobStatus,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))

    with pytest.raises(ValueError, match="update_output or update_error"):
        job_repository.update_status(job.job_id, terminal, expected_status=JobStatus.QUEUED)

    unchanged = job_repository.find_by_id(job.job_id)
    assert unchanged is not None
    assert unchanged.status == JobStatus.QUEUED
    assert unchanged.end_time is None


def test_release_job_returns_running_job_to_queue(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")

    assert job_repository.release_job(job.job_id, worker_id="worker-b") is False
    assert job_repository.release_job(job.job_id, worker_id="worker-a") is True
    assert job_repository.release_job(job.job_id, worker_id="worker-a") is False

    released = job_repository.find_by_id(job.job_id)
    assert released is not None
    assert released.status == JobStatus.QUEUED
    assert released.retry_count == 0
    assert [queued.job_id for queued in job_repository.find_queued_jobs()] == [job.job_id]
    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    assert details.events[-1].event_type == "released"
    assert details.events[-1].status_from == JobStatus.RUNNING


def test_recover_stale_running_jobs_requeues_or_fails(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    fresh = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    exhausted = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=fresh.job_id, worker_id="worker-dead")
    job_repository.claim_job(job_id=exhausted.job_id, worker_id="worker-dead")

    assert (
        job_repository.recover_stale_running_jobs(stale_after=timedelta(hours=1), max_retries=3)
        == 0
    )
    recovered = job_repository.recover_stale_running_jobs(
        stale_after=timedelta(0),
        max_retries=0,
    )
    assert recovered == 2

    for job_id in (fresh.job_id, exhausted.job_id):
        job = job_repository.find_by_id(job_id)
        assert job is not None
        assert job.status == JobStatus.FAILED
        assert job.error_message is not None
        assert "worker-dead" in job.error_message


def test_recover_stale_running_job_with_budget_becomes_retrying(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-dead")

    assert job_repository.recover_stale_running_jobs(stale_after=timedelta(0)) == 1

    recovered = job_repository.find_by_id(job.job_id)
    assert recovered is not None
    assert recovered.status == JobStatus.RETRYING
    assert recovered.retry_count == 1
    assert recovered.worker_id is None
    assert [queued.job_id for queued in job_repository.find_queued_jobs()] == [job.job_id]


def test_job_details_include_event_history(
    job_repository: JobRepository,
    two_step_workflow: WorkflowBuilder,
) -> None:
    job = job_repository.create("user-1", two_step_workflow("t1", "t2"))
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")
    job_repository.increment_retry_count(job.job_id, error_message="boom")
    job_repository.claim_job(job_id=job.job_id, worker_id="worker-a")
    job_repository.update_output(job.job_id, {"a": {"x": 1}, "b": {"y": 2}})

    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.SUCCESS
    assert [event.event_type for event in details.events] == [
        "created",
        "claimed",
        "retry_scheduled",
        "claimed",
        "succeeded",
    ]
    assert details.events[0].status_from is None
    assert details.events[0].status_to == JobStatus.QUEUED
    assert details.events[2].details["error_message"] == "boom"
    assert details.events[3].status_from == JobStatus.RETRYING
    assert job_repository.get_job_details("missing") is None
