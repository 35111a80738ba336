"""Registry of externally hosted tools."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from toolflow.storage.alembic_runner import upgrade_head
from toolflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from toolflow.storage.sqlmodel_models import McpTool


class ToolStatus(str, Enum):
    """Review state of a registered tool; only approved tools are callable."""

    PENDING = "Pending"
    APPROVED = "Approved"
    DISABLED = "Disabled"


@dataclass(slots=True)
class ToolView:
    tool_id: str
    name: str
    gateway_url: str
    credit_cost_per_call: int
    developer_id: str
    status: ToolStatus
    created_at: datetime
    updated_at: datetime


class ToolRegistry(Protocol):
    """Lookup used by the executor to resolve a step's tool."""

    def find_by_id(self, tool_id: str) -> ToolView | None:
        """Return the tool or ``None`` when it is not registered."""


class ToolRepository:
    """SQLite-backed tool registry."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def register(
        self,
        *,
        name: str,
        gateway_url: str,
        developer_id: str,
        credit_cost_per_call: int = 0,
    ) -> ToolView:
        """Register a tool in Pending state."""

        if credit_cost_per_call < 0:
            raise ValueError("credit_cost_per_call must be >= 0")
        now = utc_now()
        with Session(self.engine) as session:
            row = McpTool(
                tool_id=str(uuid4()),
                name=name,
                gateway_url=gateway_url,
                credit_cost_per_call=credit_cost_per_call,
                developer_id=developer_id,
                status=ToolStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tool_view(row)

    def find_by_id(self, tool_id: str) -> ToolView | None:
        with Session(self.engine) as session:
            row = session.exec(select(McpTool).where(McpTool.tool_id == tool_id)).one_or_none()
            return _to_tool_view(row) if row is not None else None

    def find_approved(self) -> list[ToolView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(McpTool)
                .where(McpTool.status == ToolStatus.APPROVED.value)
                .order_by(col(McpTool.name).asc()),
            ).all()
        return [_to_tool_view(row) for row in rows]

    def list_tools(self, *, limit: int = 100) -> list[ToolView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(McpTool).order_by(col(McpTool.created_at).desc()).limit(limit),
            ).all()
        return [_to_tool_view(row) for row in rows]

    def update_status(self, tool_id: str, status: ToolStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(McpTool)
                .where(col(McpTool.tool_id) == tool_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1


def _to_tool_view(row: McpTool) -> ToolView:
    return ToolView(
        tool_id=row.tool_id,
        name=row.name,
        gateway_url=row.gateway_url,
        credit_cost_per_call=row.credit_cost_per_call,
        developer_id=row.developer_id,
        status=ToolStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
