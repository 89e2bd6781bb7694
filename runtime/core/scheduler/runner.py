"""Scheduler loop.

One tick:
- requeue claims abandoned by dead workers (older than twice the job timeout)
- fetch up to `batch_size` due jobs
- claim each and run the single-job pipeline on a bounded worker pool

Every claimed job reaches a terminal status inside the tick: any exception
from the pipeline becomes `failed` with its message. A lost claim means
another worker owns the job and is not counted.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from config.settings import SchedulerConfig
from executor.engine import AgentJobEngine
from executor.state_machine import DONE, FAILED, RUNNING, SKIPPED
from storage.interfaces import Job, JobStore
from utils import utcnow

logger = logging.getLogger(__name__)

_LOST = "lost"


@dataclass(frozen=True)
class RunSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    lost_claims: int = 0
    requeued: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "ok": True,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "lost_claims": self.lost_claims,
            "requeued": self.requeued,
        }


def _error_message(err: BaseException) -> str:
    return str(err) or err.__class__.__name__


class Scheduler:
    def __init__(
        self,
        *,
        config: SchedulerConfig,
        jobs: JobStore,
        engine: AgentJobEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self._jobs = jobs
        self._engine = engine
        self._clock = clock
        self._account_locks: dict[str, threading.Lock] = {}
        self._account_locks_guard = threading.Lock()

    def requeue_abandoned(self) -> list[str]:
        now = self._clock()
        cutoff = now - timedelta(seconds=self.config.abandon_after_seconds)
        requeued = self._jobs.requeue_abandoned(claimed_before=cutoff, now=now)
        if requeued:
            logger.warning(f"requeued {len(requeued)} abandoned job(s)", extra={"event": "jobs_requeued"})
        return requeued

    def run_once(self) -> RunSummary:
        requeued = self.requeue_abandoned()
        due = self._jobs.fetch_due(now=self._clock(), limit=self.config.batch_size)
        if not due:
            logger.info("no due jobs", extra={"event": "no_due_jobs"})
            return RunSummary(requeued=len(requeued))

        counts: Counter[str] = Counter()
        workers = min(self.config.max_workers, len(due))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agent-job") as pool:
            futures = {pool.submit(self._run_job, job): job for job in due}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    counts[future.result()] += 1
                except Exception:
                    # The failure write itself failed; the reaper will pick the job up.
                    logger.exception(
                        "job_finalize_error",
                        extra={"event": "job_finalize_error", "job_id": job.job_id, "account_id": job.account_id},
                    )
                    counts[FAILED] += 1

        summary = RunSummary(
            processed=counts[DONE],
            failed=counts[FAILED],
            skipped=counts[SKIPPED],
            lost_claims=counts[_LOST],
            requeued=len(requeued),
        )
        logger.info(
            f"tick done: processed={summary.processed} failed={summary.failed} skipped={summary.skipped}",
            extra={"event": "scheduler_tick"},
        )
        return summary

    def run_forever(self, stop: threading.Event | None = None) -> None:
        if not self.config.enabled:
            logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
            return
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("scheduler_tick_failed", extra={"event": "scheduler_tick_failed"})
            stop.wait(self.config.poll_interval_seconds)

    def _run_job(self, job: Job) -> str:
        log_extra = {"job_id": job.job_id, "account_id": job.account_id, "job_type": job.job_type}
        claimed_at = self._clock()
        if not self._jobs.claim(job.job_id, now=claimed_at):
            logger.info("claim lost to another worker", extra={"event": "claim_lost", **log_extra})
            return _LOST

        logger.info("job_claimed", extra={"event": "job_claimed", **log_extra})
        claimed = replace(job, status=RUNNING, claimed_at=claimed_at)

        try:
            with self._account_guard(job.account_id):
                outcome = self._engine.process(claimed)
        except Exception as e:
            logger.exception("job_failed", extra={"event": "job_failed", "status": FAILED, **log_extra})
            return self._finalize(job, FAILED, claimed_at, log_extra, error=_error_message(e))

        return self._finalize(job, outcome.status, claimed_at, log_extra, result=outcome.result, error=outcome.error)

    def _finalize(self, job: Job, status: str, claimed_at: datetime, log_extra: dict[str, Any], **fields: Any) -> str:
        if not self._jobs.finalize(job.job_id, status, now=self._clock(), claimed_at=claimed_at, **fields):
            # Our claim was reaped and the job belongs to another run now.
            logger.warning("claim superseded; outcome dropped", extra={"event": "claim_superseded", "status": status, **log_extra})
            return _LOST
        logger.info("job_finalized", extra={"event": "job_finalized", "status": status, **log_extra})
        return status

    @contextmanager
    def _account_guard(self, account_id: str) -> Iterator[None]:
        """Serialize one account's jobs within this process when configured."""
        if not self.config.serialize_accounts:
            yield
            return
        with self._account_locks_guard:
            lock = self._account_locks.setdefault(account_id, threading.Lock())
        with lock:
            yield
