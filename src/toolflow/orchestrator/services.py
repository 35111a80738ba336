"""Use-case services for job admission."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from toolflow.jobs.models import JobView, WorkflowDefinition
from toolflow.jobs.repository import JobRepository
from toolflow.queue.base import JOB_CREATED_TOPIC, QueueMessage, QueueProducer

logger = logging.getLogger(__name__)


class JobAdmissionService:
    """Persists a new job and announces it on ``job.created``."""

    def __init__(self, *, repository: JobRepository, producer: QueueProducer) -> None:
        self.repository = repository
        self.producer = producer

    def submit(
        self,
        user_id: str,
        workflow_definition: WorkflowDefinition | Mapping[str, Any],
    ) -> JobView:
        """Create a Queued job, then publish its event.

        Validation errors propagate and nothing is stored. A publish failure
        leaves the job Queued for the poll backstop.
        """

        job = self.repository.create(user_id, workflow_definition)
        message = QueueMessage(
            id=job.job_id,
            type=JOB_CREATED_TOPIC,
            payload={
                "jobId": job.job_id,
                "userId": job.user_id,
                "workflowDefinition": job.workflow_definition,
            },
        )
        try:
            self.producer.send(message)
        except Exception:
            logger.exception("Failed to publish %s for job %s", JOB_CREATED_TOPIC, job.job_id)
        else:
            logger.info("Job %s submitted for user %s", job.job_id, user_id)
        return job
