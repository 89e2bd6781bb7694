"""Job submission: validates an enqueue request and writes a queued job."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from errors import ContractViolationError
from executor.state_machine import QUEUED
from registry.schema_validator import SchemaValidator
from storage.interfaces import Job, JobStore
from utils import new_id, parse_rfc3339, utcnow

logger = logging.getLogger(__name__)


class JobSubmitter:
    def __init__(self, *, schema_validator: SchemaValidator, jobs: JobStore, clock: Callable[[], datetime] = utcnow):
        self._schemas = schema_validator
        self._jobs = jobs
        self._clock = clock

    def submit(self, request: dict[str, Any]) -> Job:
        self._schemas.validate("JobRequest", request)
        now = self._clock()

        run_at = now
        if "run_at" in request:
            try:
                run_at = parse_rfc3339(str(request["run_at"]))
            except ValueError as e:
                raise ContractViolationError(f"Invalid run_at: {e}", code="INVALID_RUN_AT") from e

        job = Job(
            job_id=new_id(),
            account_id=str(request["account_id"]),
            job_type=str(request["job_type"]),
            status=QUEUED,
            run_at=run_at,
            created_at=now,
            context=dict(request.get("context") or {}),
        )
        self._jobs.create(job)
        logger.info(
            "job_submitted",
            extra={"event": "job_submitted", "job_id": job.job_id, "account_id": job.account_id, "job_type": job.job_type},
        )
        return job
