"""Enrollment: decides which accounts get a fresh job this cycle.

Follow-ups keep a chain alive; enrollment starts chains. Per manager mode:

    light     one daily_plan per 24h, only between 08:00 and 10:59 UTC
    moderate  a job every 12h (daily_plan before 13:00 UTC, else checkin)
    full      a job every 2h (daily_plan before 10:00 UTC, else checkin)

Accounts in quiet hours or without budget for one cycle are left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from budget.gate import BudgetGate
from config.settings import EnrollmentConfig
from executor.state_machine import QUEUED
from storage.interfaces import AccountSettings, AccountStore, Job, JobStore
from utils import format_rfc3339, new_id, utcnow

logger = logging.getLogger(__name__)

_THROTTLE_HOURS = {"light": 24.0, "moderate": 12.0, "full": 2.0}
_NEVER = float("inf")


@dataclass(frozen=True)
class EnrollmentSummary:
    enqueued: int = 0
    skipped: int = 0

    def to_document(self) -> dict[str, Any]:
        return {"ok": True, "enqueued": self.enqueued, "skipped": self.skipped}


def in_quiet_hours(settings: AccountSettings, hour: int) -> bool:
    start, end = settings.quiet_start_hour, settings.quiet_end_hour
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    # Window wraps midnight, e.g. 22 -> 7.
    return hour >= start or hour < end


def pick_job_type(mode: str, hour: int, hours_since_last: float) -> str | None:
    if hours_since_last < _THROTTLE_HOURS.get(mode, _THROTTLE_HOURS["moderate"]):
        return None
    if mode == "light":
        return "daily_plan" if 8 <= hour <= 10 else None
    if mode == "full":
        return "daily_plan" if hour < 10 else "checkin"
    return "daily_plan" if hour < 13 else "checkin"


class Enroller:
    def __init__(
        self,
        *,
        config: EnrollmentConfig,
        accounts: AccountStore,
        jobs: JobStore,
        budget_gate: BudgetGate,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._accounts = accounts
        self._jobs = jobs
        self._budget = budget_gate
        self._clock = clock

    def run_once(self) -> EnrollmentSummary:
        enqueued = 0
        skipped = 0
        for account_id in self._accounts.list_account_ids(limit=self._config.max_accounts):
            try:
                job = self.enroll(account_id)
            except Exception:
                logger.exception("enrollment_failed", extra={"event": "enrollment_failed", "account_id": account_id})
                skipped += 1
                continue
            if job is None:
                skipped += 1
            else:
                enqueued += 1
        return EnrollmentSummary(enqueued=enqueued, skipped=skipped)

    def enroll(self, account_id: str) -> Job | None:
        """Enqueue one job for the account if it is due, else return None."""
        settings = self._accounts.get(account_id)
        if settings is None or not settings.active:
            return None

        cost = self._budget.cost_for(account_id)
        if not self._budget.check_and_reserve(account_id, cost).ok:
            logger.info("account lacks budget for one cycle", extra={"event": "enrollment_skipped", "account_id": account_id})
            return None

        now = self._clock()
        if in_quiet_hours(settings, now.hour):
            logger.info("account in quiet hours", extra={"event": "enrollment_skipped", "account_id": account_id})
            return None

        last = self._jobs.last_created_for_account(account_id)
        hours_since_last = (now - last.created_at).total_seconds() / 3600 if last is not None else _NEVER

        mode = settings.mode or self._config.default_mode
        job_type = pick_job_type(mode, now.hour, hours_since_last)
        if job_type is None:
            return None

        job = Job(
            job_id=new_id(),
            account_id=account_id,
            job_type=job_type,
            status=QUEUED,
            run_at=now,
            created_at=now,
            context={"mode": mode, "enqueued_at": format_rfc3339(now)},
        )
        self._jobs.create(job)
        logger.info(
            f"enqueued {job_type}",
            extra={"event": "job_enqueued", "job_id": job.job_id, "account_id": account_id, "job_type": job_type},
        )
        return job
