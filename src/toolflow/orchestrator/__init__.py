"""Workflow execution and job orchestration."""

from toolflow.orchestrator.executor import ToolClientFactory, WorkflowExecutor
from toolflow.orchestrator.processor import JobOrchestrator, JobOutcome, OrchestratorSummary
from toolflow.orchestrator.services import JobAdmissionService

__all__ = [
    "JobAdmissionService",
    "JobOrchestrator",
    "JobOutcome",
    "OrchestratorSummary",
    "ToolClientFactory",
    "WorkflowExecutor",
]
