"""Effect applier: turns a validated decision into side effects.

Order matters:
1. dispatch the notification (raising here aborts everything below)
2. debit the budget together with its ledger entry
3. persist proposed actions, each best-effort
4. enqueue follow-up jobs, each best-effort

Steps 3 and 4 never demote the job: the message already went out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from collaborators.interfaces import MessageChannel, Notification
from decision.parser import Decision
from executor.state_machine import QUEUED
from storage.interfaces import AccountStore, ActionStore, Job, JobStore, ProposedAction
from utils import new_id, utcnow

logger = logging.getLogger(__name__)

ACTION_PROPOSED = "proposed"


@dataclass
class EffectReport:
    dispatched: bool = False
    ledger_entry_id: str | None = None
    actions_created: list[str] = field(default_factory=list)
    actions_failed: int = 0
    followups_created: list[str] = field(default_factory=list)
    followups_failed: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "ledger_entry_id": self.ledger_entry_id,
            "actions_created": list(self.actions_created),
            "actions_failed": self.actions_failed,
            "followups_created": list(self.followups_created),
            "followups_failed": self.followups_failed,
        }


class EffectApplier:
    def __init__(
        self,
        *,
        channel: MessageChannel,
        accounts: AccountStore,
        actions: ActionStore,
        jobs: JobStore,
        debit_category: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._channel = channel
        self._accounts = accounts
        self._actions = actions
        self._jobs = jobs
        self._debit_category = debit_category
        self._clock = clock

    def apply(self, job: Job, decision: Decision, *, cost: float) -> EffectReport:
        report = EffectReport()
        log_extra = {"job_id": job.job_id, "account_id": job.account_id, "job_type": job.job_type}

        self._channel.send(
            job.account_id,
            Notification(
                title=decision.title,
                body=decision.body,
                ctas=[c.to_document() for c in decision.ctas],
                priority=decision.priority,
                job_id=job.job_id,
                cost=cost,
            ),
        )
        report.dispatched = True
        logger.info("notification_dispatched", extra={"event": "notification_dispatched", **log_extra})

        entry = self._accounts.debit(
            job.account_id,
            cost,
            self._debit_category,
            {"job_id": job.job_id, "job_type": job.job_type, "message_title": decision.title},
            now=self._clock(),
        )
        report.ledger_entry_id = entry.entry_id
        logger.info("budget_debited", extra={"event": "budget_debited", **log_extra})

        for proposal in decision.actions:
            action = ProposedAction(
                action_id=new_id(),
                account_id=job.account_id,
                job_id=job.job_id,
                domain=proposal.domain,
                action_type=proposal.action_type,
                title=proposal.title,
                payload=proposal.payload,
                status=ACTION_PROPOSED,
                created_at=self._clock(),
                entity_id=proposal.entity_id,
            )
            try:
                self._actions.create(action)
            except Exception:
                report.actions_failed += 1
                logger.exception("action_insert_failed", extra={"event": "action_insert_failed", **log_extra})
                continue
            report.actions_created.append(action.action_id)

        if report.actions_created:
            logger.info(
                f"created {len(report.actions_created)} proposed action(s)",
                extra={"event": "actions_proposed", **log_extra},
            )

        for followup in decision.followups:
            now = self._clock()
            # Never earlier than the parent's claim, so chains run in causal order.
            base = max(now, job.claimed_at) if job.claimed_at is not None else now
            child = Job(
                job_id=new_id(),
                account_id=job.account_id,
                job_type=followup.job_type,
                status=QUEUED,
                run_at=base + timedelta(minutes=followup.delay_minutes),
                created_at=now,
                context={"parent_job_id": job.job_id},
            )
            try:
                self._jobs.create(child)
            except Exception:
                report.followups_failed += 1
                logger.exception("followup_insert_failed", extra={"event": "followup_insert_failed", **log_extra})
                continue
            report.followups_created.append(child.job_id)
            logger.info(
                f"follow-up {followup.job_type} in {followup.delay_minutes}m",
                extra={"event": "followup_enqueued", **log_extra},
            )

        return report
