"""Error taxonomy shared by admission, execution and orchestration."""

from __future__ import annotations

from typing import Any


class ToolflowError(Exception):
    """Base class for all toolflow errors."""


class ValidationError(ToolflowError):
    """Workflow definition is structurally invalid and was not persisted."""


class WorkflowExecutionError(ToolflowError):
    """Runtime failure of one job attempt."""


class DependencyError(WorkflowExecutionError):
    """A step depends on a step that has not produced a result yet."""

    def __init__(self, *, step_id: str, missing_id: str) -> None:
        super().__init__(f"Step {step_id!r} depends on {missing_id!r}, which has no result yet")
        self.step_id = step_id
        self.missing_id = missing_id


class ToolUnavailableError(WorkflowExecutionError):
    """Tool is not registered or not approved for calls."""

    def __init__(self, *, tool_id: str, status: str | None) -> None:
        reason = "not found" if status is None else f"status is {status}"
        super().__init__(f"Tool {tool_id} is unavailable ({reason})")
        self.tool_id = tool_id
        self.status = status


class ToolInvocationError(WorkflowExecutionError):
    """Remote tool call failed at the transport or returned an error object."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data}


class StaleMessageError(ToolflowError):
    """Message references a job that no longer exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
