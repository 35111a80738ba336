"""Runtime configuration for the job orchestrator."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from toolflow.jobs.models import MAX_RETRIES

SUPPORTED_QUEUE_BACKENDS = ("sqlite", "memory")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class OrchestratorSettings:
    """Intake, claim and retry policy."""

    worker_id: str = ""
    poll_interval_seconds: float = 5.0
    poll_error_interval_seconds: float = 10.0
    poll_batch_size: int = 10
    max_retries: int = 3
    retry_base_seconds: float = 0.0
    retry_max_seconds: float = 300.0
    stale_running_seconds: int = 0


@dataclass(slots=True)
class QueueSettings:
    """Queue transport selection and consumer tuning."""

    backend: str = "sqlite"
    db_path: Path | None = None
    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: float = 300.0
    max_deliveries: int = 5
    redelivery_delay_seconds: float = 5.0


@dataclass(slots=True)
class ToolSettings:
    """Remote tool call settings."""

    call_timeout_seconds: float = 300.0
    api_key: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".toolflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        queue_db_path = os.getenv("TOOLFLOW_QUEUE_DB_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TOOLFLOW_DB_PATH", ".toolflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TOOLFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("TOOLFLOW_LOG_LEVEL", "INFO").strip().upper(),
            orchestrator=OrchestratorSettings(
                worker_id=os.getenv("TOOLFLOW_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(os.getenv("TOOLFLOW_POLL_INTERVAL_SECONDS", "5.0")),
                poll_error_interval_seconds=float(
                    os.getenv("TOOLFLOW_POLL_ERROR_INTERVAL_SECONDS", "10.0"),
                ),
                poll_batch_size=int(os.getenv("TOOLFLOW_POLL_BATCH_SIZE", "10")),
                max_retries=int(os.getenv("TOOLFLOW_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("TOOLFLOW_RETRY_BASE_SECONDS", "0")),
                retry_max_seconds=float(os.getenv("TOOLFLOW_RETRY_MAX_SECONDS", "300")),
                stale_running_seconds=int(os.getenv("TOOLFLOW_STALE_RUNNING_SECONDS", "0")),
            ),
            queue=QueueSettings(
                backend=os.getenv("TOOLFLOW_QUEUE_BACKEND", "sqlite").strip().lower(),
                db_path=Path(queue_db_path) if queue_db_path else None,
                poll_interval_seconds=float(
                    os.getenv("TOOLFLOW_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                visibility_timeout_seconds=float(
                    os.getenv("TOOLFLOW_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300"),
                ),
                max_deliveries=int(os.getenv("TOOLFLOW_QUEUE_MAX_DELIVERIES", "5")),
                redelivery_delay_seconds=float(
                    os.getenv("TOOLFLOW_QUEUE_REDELIVERY_DELAY_SECONDS", "5.0"),
                ),
            ),
            tools=ToolSettings(
                call_timeout_seconds=float(
                    os.getenv("TOOLFLOW_TOOL_CALL_TIMEOUT_SECONDS", "300"),
                ),
                api_key=os.getenv("TOOLFLOW_TOOL_API_KEY") or None,
            ),
        )

    @property
    def queue_db_path(self) -> Path:
        """Queue database; defaults to the job database."""

        return self.queue.db_path or self.db_path

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.queue.backend not in SUPPORTED_QUEUE_BACKENDS:
            raise ValueError(
                f"Unsupported TOOLFLOW_QUEUE_BACKEND: {self.queue.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_QUEUE_BACKENDS)}.",
            )
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Unsupported TOOLFLOW_LOG_LEVEL: {self.log_level!r}")
        orchestrator = self.orchestrator
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("TOOLFLOW_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestrator.poll_error_interval_seconds < orchestrator.poll_interval_seconds:
            raise ValueError(
                "TOOLFLOW_POLL_ERROR_INTERVAL_SECONDS must be >= TOOLFLOW_POLL_INTERVAL_SECONDS.",
            )
        if orchestrator.poll_batch_size <= 0:
            raise ValueError("TOOLFLOW_POLL_BATCH_SIZE must be a positive integer.")
        if not 0 <= orchestrator.max_retries <= MAX_RETRIES:
            raise ValueError(f"TOOLFLOW_MAX_RETRIES must be between 0 and {MAX_RETRIES}.")
        if orchestrator.retry_base_seconds < 0 or orchestrator.retry_max_seconds < 0:
            raise ValueError(
                "TOOLFLOW_RETRY_BASE_SECONDS and TOOLFLOW_RETRY_MAX_SECONDS must be >= 0.",
            )
        if orchestrator.stale_running_seconds < 0:
            raise ValueError("TOOLFLOW_STALE_RUNNING_SECONDS must be >= 0.")
        if self.queue.max_deliveries <= 0:
            raise ValueError("TOOLFLOW_QUEUE_MAX_DELIVERIES must be a positive integer.")
        if self.queue.visibility_timeout_seconds <= 0:
            raise ValueError("TOOLFLOW_QUEUE_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.tools.call_timeout_seconds < 0:
            raise ValueError("TOOLFLOW_TOOL_CALL_TIMEOUT_SECONDS must be >= 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"
