from __future__ import annotations

from pathlib import Path

import allure
import pytest

from toolflow.config import OrchestratorSettings, QueueSettings, Settings, ToolSettings

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TOOLFLOW_DB_PATH",
        "TOOLFLOW_WORKER_ID",
        "TOOLFLOW_QUEUE_BACKEND",
        "TOOLFLOW_QUEUE_DB_PATH",
        "TOOLFLOW_MAX_RETRIES",
        "TOOLFLOW_TOOL_CALL_TIMEOUT_SECONDS",
        "TOOLFLOW_TOOL_API_KEY",
        "TOOLFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".toolflow.db")
    assert settings.queue.backend == "sqlite"
    assert settings.queue_db_path == settings.db_path
    assert settings.orchestrator.max_retries == 3
    assert settings.orchestrator.poll_interval_seconds == 5.0
    assert settings.orchestrator.poll_error_interval_seconds == 10.0
    assert settings.orchestrator.worker_id
    assert settings.tools.call_timeout_seconds == 300.0
    assert settings.tools.api_key is None
    assert settings.log_level == "INFO"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TOOLFLOW_DB_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setenv("TOOLFLOW_QUEUE_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("TOOLFLOW_QUEUE_BACKEND", " Memory ")
    monkeypatch.setenv("TOOLFLOW_WORKER_ID", "worker-7")
    monkeypatch.setenv("TOOLFLOW_POLL_BATCH_SIZE", "25")
    monkeypatch.setenv("TOOLFLOW_RETRY_BASE_SECONDS", "2.5")
    monkeypatch.setenv("TOOLFLOW_TOOL_CALL_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("TOOLFLOW_TOOL_API_KEY", "secret")
    monkeypatch.setenv("TOOLFLOW_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "jobs.db"
    assert settings.queue_db_path == tmp_path / "queue.db"
    assert settings.queue.backend == "memory"
    assert settings.orchestrator.worker_id == "worker-7"
    assert settings.orchestrator.poll_batch_size == 25
    assert settings.orchestrator.retry_base_seconds == 2.5
    assert settings.tools.call_timeout_seconds == 0.0
    assert settings.tools.api_key == "secret"
    assert settings.log_level == "DEBUG"
    settings.validate()


def test_lower_retry_bound_from_env_is_accepted(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOOLFLOW_MAX_RETRIES", "1")

    settings = Settings.from_env()

    assert settings.orchestrator.max_retries == 1
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TOOLFLOW_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(queue=QueueSettings(backend="kafka")), "TOOLFLOW_QUEUE_BACKEND"),
        (Settings(log_level="LOUD"), "TOOLFLOW_LOG_LEVEL"),
        (
            Settings(orchestrator=OrchestratorSettings(poll_interval_seconds=0)),
            "TOOLFLOW_POLL_INTERVAL_SECONDS",
        ),
        (
            Settings(
                orchestrator=OrchestratorSettings(
                    poll_interval_seconds=10,
                    poll_error_interval_seconds=5,
                ),
            ),
            "TOOLFLOW_POLL_ERROR_INTERVAL_SECONDS",
        ),
        (
            Settings(orchestrator=OrchestratorSettings(poll_batch_size=0)),
            "TOOLFLOW_POLL_BATCH_SIZE",
        ),
        (Settings(orchestrator=OrchestratorSettings(max_retries=-1)), "TOOLFLOW_MAX_RETRIES"),
        (Settings(orchestrator=OrchestratorSettings(max_retries=5)), "TOOLFLOW_MAX_RETRIES"),
        (Settings(queue=QueueSettings(max_deliveries=0)), "TOOLFLOW_QUEUE_MAX_DELIVERIES"),
        (
            Settings(tools=ToolSettings(call_timeout_seconds=-1)),
            "TOOLFLOW_TOOL_CALL_TIMEOUT_SECONDS",
        ),
    ],
)
def test_validate_names_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()
