"""Controllers for toolflow CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from toolflow.config import Settings
from toolflow.errors import ValidationError
from toolflow.jobs.models import JobView
from toolflow.jobs.repository import JobRepository
from toolflow.orchestrator.executor import ToolClientFactory, WorkflowExecutor
from toolflow.orchestrator.processor import JobOrchestrator, OrchestratorSummary
from toolflow.orchestrator.services import JobAdmissionService
from toolflow.queue import QueueConsumer, create_consumer, create_producer
from toolflow.tools.client import McpClient, ToolClient
from toolflow.tools.registry import ToolRepository, ToolStatus, ToolView


@dataclass(slots=True)
class ToolRegisterCommand:
    """CLI input for tool registration."""

    db_path: Path | None
    name: str
    gateway_url: str
    developer_id: str
    credit_cost_per_call: int


@dataclass(slots=True)
class ToolStatusCommand:
    """CLI input for approve/disable operations."""

    db_path: Path | None
    tool_id: str
    status: ToolStatus


@dataclass(slots=True)
class ToolListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission from a workflow JSON file."""

    db_path: Path | None
    user_id: str
    workflow_path: Path


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class JobShowCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None


class ToolflowCliController:
    """Wires settings, repositories and services for each CLI command."""

    def __init__(self, *, client_factory: ToolClientFactory | None = None) -> None:
        self._client_factory = client_factory

    def register_tool(self, command: ToolRegisterCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _tool_repository(settings) as tools:
            tool = tools.register(
                name=command.name,
                gateway_url=command.gateway_url,
                developer_id=command.developer_id,
                credit_cost_per_call=command.credit_cost_per_call,
            )
        return [
            f"Tool registered: {tool.tool_id}",
            f"Status: {tool.status.value}",
        ]

    def set_tool_status(self, command: ToolStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _tool_repository(settings) as tools:
            updated = tools.update_status(command.tool_id, command.status)
        if not updated:
            return [f"Tool not found: {command.tool_id}"]
        return [f"Tool {command.tool_id} is now {command.status.value}"]

    def list_tools(self, command: ToolListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _tool_repository(settings) as tools:
            rows = tools.list_tools(limit=command.limit)
        if not rows:
            return ["No tools registered."]
        return [_format_tool(tool) for tool in rows]

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        """Validate the workflow file, persist the job and publish ``job.created``."""

        settings = _settings(command.db_path)
        definition = _read_workflow(command.workflow_path)
        producer = create_producer(settings)
        try:
            with _job_repository(settings) as repository:
                job = JobAdmissionService(repository=repository, producer=producer).submit(
                    command.user_id,
                    definition,
                )
        finally:
            producer.close()
        return [
            f"Job submitted: {job.job_id}",
            f"Status: {job.status.value}",
            f"Steps: {len(job.workflow_definition.get('steps', []))}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_repository(settings) as repository:
            if command.user_id:
                jobs = repository.find_by_user(command.user_id, limit=command.limit)
            else:
                jobs = repository.find_queued_jobs(limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [_format_job(job) for job in jobs]

    def show_job(self, command: JobShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"User: {job.user_id}",
            f"Status: {job.status.value}",
            f"Retries: {job.retry_count}",
            f"Started: {job.start_time.isoformat()}",
            f"Ended: {job.end_time.isoformat() if job.end_time else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Output: {_dump(job.final_output) if job.final_output is not None else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        worker_id = settings.orchestrator.worker_id
        with (
            _job_repository(settings) as repository,
            _tool_repository(settings) as tools,
            _consumer(settings, worker_id=worker_id, enabled=not command.once) as consumer,
        ):
            executor = WorkflowExecutor(
                registry=tools,
                client_factory=self._client_factory or _mcp_client_factory(settings),
            )
            orchestrator = JobOrchestrator(
                repository=repository,
                executor=executor,
                worker_id=worker_id,
                consumer=consumer,
                poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
                poll_error_interval_seconds=settings.orchestrator.poll_error_interval_seconds,
                poll_batch_size=settings.orchestrator.poll_batch_size,
                max_retries=settings.orchestrator.max_retries,
                retry_base_seconds=settings.orchestrator.retry_base_seconds,
                retry_max_seconds=settings.orchestrator.retry_max_seconds,
                stale_running_seconds=settings.orchestrator.stale_running_seconds,
            )
            summary = (
                orchestrator.run_until_idle(max_jobs=command.max_jobs)
                if command.once
                else orchestrator.run_forever()
            )
        return [_format_summary(summary)]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _read_workflow(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValidationError(f"Workflow file is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError("Workflow file must contain a JSON object")
    return payload


def _mcp_client_factory(settings: Settings) -> ToolClientFactory:
    def _factory(tool: ToolView) -> ToolClient:
        return McpClient(
            tool.gateway_url,
            api_key=settings.tools.api_key,
            timeout_seconds=settings.tools.call_timeout_seconds,
        )

    return _factory


def _format_tool(tool: ToolView) -> str:
    return (
        f"{tool.tool_id} {tool.status.value:<8} name={tool.name} "
        f"cost={tool.credit_cost_per_call} developer={tool.developer_id} url={tool.gateway_url}"
    )


def _format_job(job: JobView) -> str:
    return (
        f"{job.job_id} {job.status.value:<8} user={job.user_id} "
        f"retries={job.retry_count} created_at={job.created_at.isoformat()}"
    )


def _format_summary(summary: OrchestratorSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"skipped={summary.skipped} stale={summary.stale} released={summary.released}"
    )


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


@contextmanager
def _job_repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _tool_repository(settings: Settings) -> Iterator[ToolRepository]:
    repository = ToolRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _consumer(
    settings: Settings,
    *,
    worker_id: str,
    enabled: bool,
) -> Iterator[QueueConsumer | None]:
    if not enabled:
        yield None
        return
    consumer = create_consumer(settings, consumer_id=worker_id)
    try:
        yield consumer
    finally:
        # Joins the in-flight handler before the job repository's engine is disposed.
        consumer.close()
