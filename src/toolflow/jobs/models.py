"""Domain models for processing jobs and workflow definitions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from toolflow.errors import ValidationError

MAX_RETRIES = 3


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "Queued"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"
    RETRYING = "Retrying"


CLAIMABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RETRYING})
TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED})


@dataclass(slots=True, frozen=True)
class WorkflowStep:
    """One tool invocation within a workflow."""

    id: str
    tool_id: str
    action: str
    parameters: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "tool_id": self.tool_id,
            "action": self.action,
            "parameters": dict(self.parameters),
        }
        if self.depends_on:
            payload["depends_on"] = list(self.depends_on)
        return payload


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    """Ordered, dependency-annotated list of steps."""

    steps: tuple[WorkflowStep, ...]
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        *,
        check_dependencies: bool = True,
    ) -> WorkflowDefinition:
        """Parse a workflow document, raising ValidationError when malformed.

        With ``check_dependencies`` every ``depends_on`` entry must name a step
        declared earlier in the sequence. The executor re-checks dependencies while
        running, so it decodes with the check off and reports DependencyError itself.
        """

        if not isinstance(payload, Mapping):
            raise ValidationError("workflow_definition must be an object")
        raw_steps = payload.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise ValidationError("workflow_definition.steps must be a non-empty list")
        metadata = payload.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("workflow_definition.metadata must be an object")

        steps = tuple(_parse_step(index, raw) for index, raw in enumerate(raw_steps))
        definition = cls(steps=steps, metadata=dict(metadata) if metadata is not None else None)
        definition.validate(check_dependencies=check_dependencies)
        return definition

    def validate(self, *, check_dependencies: bool = True) -> None:
        """Check id uniqueness and, optionally, that dependencies point backwards."""

        all_ids = {step.id for step in self.steps}
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValidationError(f"Duplicate step id: {step.id!r}")
            seen.add(step.id)
            if not check_dependencies:
                continue
            for dependency in step.depends_on:
                if dependency == step.id:
                    raise ValidationError(f"Step {step.id!r} depends on itself")
                if dependency not in all_ids:
                    raise ValidationError(
                        f"Step {step.id!r} depends on unknown step {dependency!r}",
                    )
                if dependency not in seen:
                    raise ValidationError(
                        f"Step {step.id!r} depends on {dependency!r}, "
                        "which is not declared earlier in the workflow",
                    )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"steps": [step.to_dict() for step in self.steps]}
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(slots=True)
class JobView:
    """Readable job view for the orchestrator and CLI."""

    job_id: str
    user_id: str
    workflow_definition: dict[str, Any]
    status: JobStatus
    start_time: datetime
    end_time: datetime | None
    final_output: dict[str, Any] | None
    error_message: str | None
    retry_count: int
    worker_id: str | None
    run_after: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


def _parse_step(index: int, raw: object) -> WorkflowStep:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Step #{index} must be an object")
    step_id = _required_text(raw, "id", index=index)
    tool_id = _required_text(raw, "tool_id", index=index)
    action = _required_text(raw, "action", index=index)

    parameters = raw.get("parameters")
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, Mapping):
        raise ValidationError(f"Step {step_id!r} parameters must be an object")

    depends_on = raw.get("depends_on")
    if depends_on is None:
        depends_on = []
    if not isinstance(depends_on, list) or not all(
        isinstance(item, str) and item for item in depends_on
    ):
        raise ValidationError(f"Step {step_id!r} depends_on must be a list of step ids")

    return WorkflowStep(
        id=step_id,
        tool_id=tool_id,
        action=action,
        parameters=dict(parameters),
        depends_on=tuple(depends_on),
    )


def _required_text(raw: Mapping[str, Any], key: str, *, index: int) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Step #{index} requires a non-empty {key!r}")
    return value
