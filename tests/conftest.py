"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from toolflow.jobs.repository import JobRepository
from toolflow.tools.registry import ToolRepository, ToolStatus, ToolView

_CREATED_AT = datetime(2026, 1, 1, tzinfo=UTC)


class FakeToolClient:
    """Answers calls by action name; exceptions in ``responses`` are raised."""

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = 0

    def call_tool(self, tool_id: str, name: str, arguments: Mapping[str, Any]) -> Any:
        self.calls.append((tool_id, name, dict(arguments)))
        response = self.responses.get(name)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(arguments)
        return response

    def close(self) -> None:
        self.closed += 1


class StaticRegistry:
    """In-memory tool registry keyed by tool id."""

    def __init__(self, tools: Mapping[str, ToolStatus]) -> None:
        self.tools = dict(tools)

    def find_by_id(self, tool_id: str) -> ToolView | None:
        status = self.tools.get(tool_id)
        if status is None:
            return None
        return ToolView(
            tool_id=tool_id,
            name=tool_id,
            gateway_url=f"https://tools.example/{tool_id}",
            credit_cost_per_call=1,
            developer_id="dev-1",
            status=status,
            created_at=_CREATED_AT,
            updated_at=_CREATED_AT,
        )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "toolflow.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def tool_repository(db_path: Path) -> Iterator[ToolRepository]:
    repository = ToolRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fake_tool_client() -> FakeToolClient:
    return FakeToolClient()


@pytest.fixture()
def static_registry() -> Callable[[Mapping[str, ToolStatus]], StaticRegistry]:
    return StaticRegistry


@pytest.fixture()
def register_tool(tool_repository: ToolRepository) -> Callable[..., ToolView]:
    def _register(name: str = "echo", *, status: ToolStatus = ToolStatus.APPROVED) -> ToolView:
        tool = tool_repository.register(
            name=name,
            gateway_url=f"https://tools.example/{name}",
            developer_id="dev-1",
            credit_cost_per_call=2,
        )
        if status != ToolStatus.PENDING:
            tool_repository.update_status(tool.tool_id, status)
        found = tool_repository.find_by_id(tool.tool_id)
        assert found is not None
        return found

    return _register


@pytest.fixture()
def two_step_workflow() -> Callable[[str, str], dict[str, Any]]:
    """Step ``b`` on the second tool depends on step ``a`` on the first."""

    def _build(first_tool: str, second_tool: str) -> dict[str, Any]:
        return {
            "steps": [
                {"id": "a", "tool_id": first_tool, "action": "foo", "parameters": {}},
                {
                    "id": "b",
                    "tool_id": second_tool,
                    "action": "bar",
                    "parameters": {},
                    "depends_on": ["a"],
                },
            ],
        }

    return _build
