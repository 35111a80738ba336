"""Sequential, dependency-checked runner for one workflow attempt."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from toolflow.errors import DependencyError, ToolInvocationError, ToolUnavailableError
from toolflow.jobs.models import WorkflowDefinition, WorkflowStep
from toolflow.tools.client import ToolClient
from toolflow.tools.registry import ToolRegistry, ToolStatus, ToolView

logger = logging.getLogger(__name__)

ToolClientFactory = Callable[[ToolView], ToolClient]


class WorkflowExecutor:
    """Runs steps strictly in declared order and collects results by step id.

    Steps never run in parallel, even when their dependencies would allow it.
    The first failing step aborts the attempt and its error propagates; results
    of earlier steps are discarded with it. Step ``parameters`` are passed to the
    tool verbatim.
    """

    def __init__(self, *, registry: ToolRegistry, client_factory: ToolClientFactory) -> None:
        self.registry = registry
        self.client_factory = client_factory

    def execute(self, definition: WorkflowDefinition) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for step in definition.steps:
            for dependency in step.depends_on:
                if dependency not in results:
                    raise DependencyError(step_id=step.id, missing_id=dependency)
            tool = self._resolve_tool(step)
            results[step.id] = self._invoke(step=step, tool=tool)
            logger.debug("Step %s completed via tool %s", step.id, step.tool_id)
        return results

    def _resolve_tool(self, step: WorkflowStep) -> ToolView:
        tool = self.registry.find_by_id(step.tool_id)
        if tool is None:
            raise ToolUnavailableError(tool_id=step.tool_id, status=None)
        if tool.status != ToolStatus.APPROVED:
            raise ToolUnavailableError(tool_id=step.tool_id, status=tool.status.value)
        return tool

    def _invoke(self, *, step: WorkflowStep, tool: ToolView) -> Any:
        client = self.client_factory(tool)
        try:
            return client.call_tool(step.tool_id, step.action, step.parameters)
        except ToolInvocationError as error:
            raise ToolInvocationError(
                f"Step {step.id!r} ({step.tool_id}/{step.action}) failed: {error.message}",
                code=error.code,
                data=error.data,
            ) from error
        finally:
            client.close()
