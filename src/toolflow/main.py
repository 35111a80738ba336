"""CLI entrypoint for toolflow."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from toolflow import __version__
from toolflow.config import SUPPORTED_LOG_LEVELS
from toolflow.errors import ToolflowError
from toolflow.orchestrator.controllers import (
    JobListCommand,
    JobShowCommand,
    JobSubmitCommand,
    ToolflowCliController,
    ToolListCommand,
    ToolRegisterCommand,
    ToolStatusCommand,
    WorkerCommand,
)
from toolflow.tools.registry import ToolStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ToolflowCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="toolflow")
def toolflow() -> None:
    """Workflow job orchestrator CLI."""


@toolflow.group()
def tools() -> None:
    """Tool registry commands."""


@tools.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Human-readable tool name.")
@click.option("--gateway-url", required=True, help="Endpoint that accepts tool calls.")
@click.option("--developer-id", required=True, help="Owner of the tool.")
@click.option(
    "--credit-cost",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Credits charged per call.",
)
def tools_register(
    db_path: Path | None,
    name: str,
    gateway_url: str,
    developer_id: str,
    credit_cost: int,
) -> None:
    """Register a tool; it stays Pending until approved."""

    _emit(
        lambda: CONTROLLER.register_tool(
            ToolRegisterCommand(
                db_path=db_path,
                name=name,
                gateway_url=gateway_url,
                developer_id=developer_id,
                credit_cost_per_call=credit_cost,
            ),
        ),
    )


@tools.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tool-id", required=True, help="Tool id.")
def tools_approve(db_path: Path | None, tool_id: str) -> None:
    """Allow workflows to call a tool."""

    _emit(
        lambda: CONTROLLER.set_tool_status(
            ToolStatusCommand(db_path=db_path, tool_id=tool_id, status=ToolStatus.APPROVED),
        ),
    )


@tools.command("disable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tool-id", required=True, help="Tool id.")
def tools_disable(db_path: Path | None, tool_id: str) -> None:
    """Stop workflows from calling a tool."""

    _emit(
        lambda: CONTROLLER.set_tool_status(
            ToolStatusCommand(db_path=db_path, tool_id=tool_id, status=ToolStatus.DISABLED),
        ),
    )


@tools.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=100,
    show_default=True,
    help="Max tools to print.",
)
def tools_list(db_path: Path | None, limit: int) -> None:
    """List registered tools."""

    _emit(lambda: CONTROLLER.list_tools(ToolListCommand(db_path=db_path, limit=limit)))


@toolflow.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="Submitting user.")
@click.option(
    "--workflow",
    "workflow_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file with the workflow definition.",
)
def jobs_submit(db_path: Path | None, user_id: str, workflow_path: Path) -> None:
    """Validate and enqueue a workflow job."""

    _emit(
        lambda: CONTROLLER.submit_job(
            JobSubmitCommand(db_path=db_path, user_id=user_id, workflow_path=workflow_path),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--user-id",
    default=None,
    help="List this user's jobs, newest first. Without it, list claimable jobs.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, user_id: str | None, limit: int) -> None:
    """List jobs."""

    _emit(
        lambda: CONTROLLER.list_jobs(JobListCommand(db_path=db_path, user_id=user_id, limit=limit)),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit(lambda: CONTROLLER.show_job(JobShowCommand(db_path=db_path, job_id=job_id)))


@toolflow.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Drain claimable jobs and exit, or run until interrupted.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs with --once.",
)
@click.option(
    "--log-level",
    type=click.Choice(SUPPORTED_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Overrides TOOLFLOW_LOG_LEVEL.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    log_level: str | None,
) -> None:
    """Run the job orchestrator."""

    level = (log_level or os.getenv("TOOLFLOW_LOG_LEVEL", "INFO")).strip().upper()
    if level not in SUPPORTED_LOG_LEVELS:
        raise click.ClickException(f"Unsupported TOOLFLOW_LOG_LEVEL: {level!r}")
    logging.basicConfig(level=level, format=LOG_FORMAT)
    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(db_path=db_path, once=once, max_jobs=max_jobs),
        ),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ToolflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    toolflow()
