from __future__ import annotations

import allure
import pytest

from toolflow.tools.registry import ToolRepository, ToolStatus

pytestmark = [
    allure.epic("Tool Invocation"),
    allure.feature("Tool Registry"),
]


def test_register_starts_pending(tool_repository: ToolRepository) -> None:
    tool = tool_repository.register(
        name="search",
        gateway_url="https://tools.example/search",
        developer_id="dev-1",
        credit_cost_per_call=3,
    )

    assert tool.status == ToolStatus.PENDING
    assert tool.credit_cost_per_call == 3
    assert tool_repository.find_by_id(tool.tool_id) == tool
    assert tool_repository.find_approved() == []


def test_status_changes_control_approval(tool_repository: ToolRepository) -> None:
    search = tool_repository.register(
        name="search",
        gateway_url="https://tools.example/search",
        developer_id="dev-1",
    )
    fetch = tool_repository.register(
        name="fetch",
        gateway_url="https://tools.example/fetch",
        developer_id="dev-2",
    )

    assert tool_repository.update_status(search.tool_id, ToolStatus.APPROVED) is True
    assert tool_repository.update_status(fetch.tool_id, ToolStatus.APPROVED) is True
    assert [tool.name for tool in tool_repository.find_approved()] == ["fetch", "search"]

    assert tool_repository.update_status(search.tool_id, ToolStatus.DISABLED) is True
    disabled = tool_repository.find_by_id(search.tool_id)
    assert disabled is not None
    assert disabled.status == ToolStatus.DISABLED
    assert [tool.name for tool in tool_repository.find_approved()] == ["fetch"]
    assert len(tool_repository.list_tools()) == 2


def test_unknown_tool_lookups(tool_repository: ToolRepository) -> None:
    assert tool_repository.find_by_id("missing") is None
    assert tool_repository.update_status("missing", ToolStatus.APPROVED) is False


def test_negative_credit_cost_is_rejected(tool_repository: ToolRepository) -> None:
    with pytest.raises(ValueError, match="credit_cost_per_call"):
        tool_repository.register(
            name="search",
            gateway_url="https://tools.example/search",
            developer_id="dev-1",
            credit_cost_per_call=-1,
        )
