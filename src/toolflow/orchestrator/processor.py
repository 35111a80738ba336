"""Job orchestrator: event intake, polling backstop, claim, execute, persist."""

from __future__ import annotations

import logging
import random
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from toolflow.errors import StaleMessageError, ToolflowError
from toolflow.jobs.models import MAX_RETRIES, JobView, WorkflowDefinition
from toolflow.jobs.repository import JobRepository
from toolflow.orchestrator.executor import WorkflowExecutor
from toolflow.queue.base import JOB_CREATED_TOPIC, MessageHandler, QueueConsumer, QueueMessage
from toolflow.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """What one pass of the per-job handler did."""

    STALE = "stale"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"
    RELEASED = "released"


@dataclass(slots=True)
class OrchestratorSummary:
    """Aggregate counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    stale: int = 0
    released: int = 0

    def record(self, outcome: JobOutcome) -> None:
        if outcome == JobOutcome.STALE:
            self.stale += 1
            return
        if outcome == JobOutcome.RELEASED:
            self.released += 1
            return
        if outcome == JobOutcome.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if outcome == JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == JobOutcome.RETRYING:
            self.retried += 1
        else:
            self.failed += 1


class JobOrchestrator:
    """Drives jobs from Queued/Retrying to a terminal state.

    Two intake paths feed :meth:`process_job`: the ``job.created`` subscription
    and a poll loop over claimable jobs that recovers lost events. Both may see
    the same job at the same time; the conditional claim in the repository lets
    exactly one of them run it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: WorkflowExecutor,
        worker_id: str,
        consumer: QueueConsumer | None = None,
        poll_interval_seconds: float = 5.0,
        poll_error_interval_seconds: float = 10.0,
        poll_batch_size: int = 10,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = 0.0,
        retry_max_seconds: float = 300.0,
        stale_running_seconds: int = 0,
    ) -> None:
        if not 0 <= max_retries <= MAX_RETRIES:
            raise ValueError(
                f"max_retries must be between 0 and {MAX_RETRIES}, got {max_retries}",
            )
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.consumer = consumer
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_error_interval_seconds = poll_error_interval_seconds
        self.poll_batch_size = poll_batch_size
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_running_seconds = stale_running_seconds
        self.handlers: dict[str, MessageHandler] = {JOB_CREATED_TOPIC: self.handle_job_created}
        self.summary = OrchestratorSummary()
        self._summary_lock = threading.Lock()
        self._random = random.Random()  # noqa: S311
        self._stop = threading.Event()
        self._poll_thread: threading.Thread | None = None

    def start(self) -> None:
        """Subscribe handlers, start the consumer and a background poll thread."""

        self._stop.clear()
        self._start_consumer()
        if self._poll_thread is None:
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                daemon=True,
                name=f"toolflow-poller-{self.worker_id}",
            )
            self._poll_thread.start()
        logger.info("Job orchestrator %s started", self.worker_id)

    def stop(self) -> None:
        self._stop.set()
        if self.consumer is not None:
            self.consumer.stop()
        if self._poll_thread is not None:
            self._poll_thread.join()
            self._poll_thread = None
        logger.info("Job orchestrator %s stopped", self.worker_id)

    def request_stop(self) -> None:
        self._stop.set()

    def run_forever(self) -> OrchestratorSummary:
        """Run both intake paths until SIGINT/SIGTERM or :meth:`request_stop`."""

        self._stop.clear()
        with self._signal_handlers():
            self._start_consumer()
            logger.info("Job orchestrator %s running", self.worker_id)
            try:
                self._poll_loop()
            finally:
                if self.consumer is not None:
                    self.consumer.stop()
        logger.info("Job orchestrator %s stopped", self.worker_id)
        return self.summary

    def run_until_idle(self, *, max_jobs: int | None = None) -> OrchestratorSummary:
        """Poll repeatedly until no claimable job is left (or ``max_jobs`` ran)."""

        self._stop.clear()
        while not self._stop.is_set():
            if max_jobs is not None and self.summary.processed >= max_jobs:
                break
            processed_before = self.summary.processed
            found = self.poll_once(limit=_remaining(max_jobs, processed_before))
            if found == 0 or self.summary.processed == processed_before:
                break
        return self.summary

    def handle_job_created(self, message: QueueMessage) -> None:
        """Event intake for ``job.created``."""

        job_id = message.payload.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            logger.warning("Ignoring %s message %s without jobId", message.type, message.id)
            return
        self.process_job(job_id)

    def poll_once(self, *, limit: int | None = None) -> int:
        """One backstop pass over claimable jobs; returns how many were found."""

        if self.stale_running_seconds > 0:
            recovered = self.repository.recover_stale_running_jobs(
                stale_after=timedelta(seconds=self.stale_running_seconds),
                max_retries=self.max_retries,
            )
            if recovered:
                logger.warning("Recovered %d stale running jobs", recovered)

        batch = self.poll_batch_size if limit is None else min(limit, self.poll_batch_size)
        jobs = self.repository.find_queued_jobs(batch)
        for job in jobs:
            if self._stop.is_set():
                break
            self.process_job(job.job_id)
        return len(jobs)

    def process_job(self, job_id: str) -> JobOutcome:
        """Claim, execute and persist one job; safe to call for duplicates."""

        try:
            self._load_job(job_id)
        except StaleMessageError as error:
            logger.warning("Dropping stale job reference: %s", error)
            return self._record(JobOutcome.STALE)

        claimed = self.repository.claim_job(job_id=job_id, worker_id=self.worker_id)
        if claimed is None:
            logger.debug("Job %s is not claimable, skipping", job_id)
            return self._record(JobOutcome.SKIPPED)

        logger.info("Processing job %s (retry_count=%d)", job_id, claimed.retry_count)
        try:
            return self._record(self._run_claimed(claimed))
        except Exception:
            logger.exception("Job %s: could not record outcome, releasing claim", job_id)
            return self._record(self._release(job_id))

    def _run_claimed(self, claimed: JobView) -> JobOutcome:
        job_id = claimed.job_id
        try:
            definition = WorkflowDefinition.from_dict(
                claimed.workflow_definition,
                check_dependencies=False,
            )
            output = self.executor.execute(definition)
        except ToolflowError as error:
            logger.warning("Job %s failed: %s", job_id, error)
            return self._handle_failure(job=claimed, error_message=str(error))
        except Exception as error:
            logger.exception("Job %s unexpected error", job_id)
            return self._handle_failure(job=claimed, error_message=f"Unexpected error: {error}")

        if not self.repository.update_output(job_id, output, worker_id=self.worker_id):
            logger.warning("Job %s changed owner before its output was committed", job_id)
            return JobOutcome.SKIPPED
        logger.info("Job %s completed successfully", job_id)
        return JobOutcome.SUCCEEDED

    def _release(self, job_id: str) -> JobOutcome:
        try:
            released = self.repository.release_job(job_id, worker_id=self.worker_id)
        except Exception:
            logger.exception(
                "Job %s could not be released; it stays Running until stale recovery",
                job_id,
            )
            return JobOutcome.SKIPPED
        if not released:
            logger.warning("Job %s changed owner before it could be released", job_id)
            return JobOutcome.SKIPPED
        return JobOutcome.RELEASED

    def _start_consumer(self) -> None:
        if self.consumer is None:
            return
        for topic, handler in self.handlers.items():
            self.consumer.subscribe(topic, handler)
        self.consumer.start()

    def _load_job(self, job_id: str) -> JobView:
        job = self.repository.find_by_id(job_id)
        if job is None:
            raise StaleMessageError(job_id)
        return job

    def _handle_failure(self, *, job: JobView, error_message: str) -> JobOutcome:
        if job.retry_count < self.max_retries:
            delay_seconds = self._compute_retry_delay(retry_number=job.retry_count + 1)
            if self.repository.increment_retry_count(
                job.job_id,
                error_message=error_message,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                worker_id=self.worker_id,
                max_retries=self.max_retries,
            ):
                logger.info(
                    "Re-queuing job %s for retry %d/%d",
                    job.job_id,
                    job.retry_count + 1,
                    self.max_retries,
                )
                return JobOutcome.RETRYING

        if self.repository.update_error(job.job_id, error_message, worker_id=self.worker_id):
            return JobOutcome.FAILED
        logger.warning("Job %s changed owner before its failure was committed", job.job_id)
        return JobOutcome.SKIPPED

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        if max_delay <= 0:
            return 0.0
        return self._random.uniform(0, max_delay)

    def _record(self, outcome: JobOutcome) -> JobOutcome:
        with self._summary_lock:
            self.summary.record(outcome)
        return outcome

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Error polling queued jobs")
                self._stop.wait(timeout=self.poll_error_interval_seconds)
                continue
            self._stop.wait(timeout=self.poll_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after in-flight jobs", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _remaining(max_jobs: int | None, processed: int) -> int | None:
    if max_jobs is None:
        return None
    return max(max_jobs - processed, 0)
