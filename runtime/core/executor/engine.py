"""Single-job pipeline.

budget gate -> snapshot -> decision engine (bounded by the job timeout)
-> output contract parser -> effect applier

The pipeline returns an outcome for the expected paths (done, skipped) and
raises for everything else; the scheduler loop owns the failure boundary and
all status writes.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from budget.gate import BudgetGate
from collaborators.interfaces import DecisionEngine, SnapshotProvider
from decision.parser import DecisionParser, ParseErr
from decision.prompts import build_prompt
from errors import DecisionTimeoutError
from executor.effects import EffectApplier
from executor.state_machine import DONE, SKIPPED
from storage.interfaces import Job
from utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None


class AgentJobEngine:
    def __init__(
        self,
        *,
        budget_gate: BudgetGate,
        snapshots: SnapshotProvider,
        decision_engine: DecisionEngine,
        parser: DecisionParser,
        effects: EffectApplier,
        timeout_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._budget = budget_gate
        self._snapshots = snapshots
        self._decision_engine = decision_engine
        self._parser = parser
        self._effects = effects
        self._timeout_seconds = timeout_seconds
        self._clock = clock

    def process(self, job: Job) -> JobOutcome:
        log_extra = {"job_id": job.job_id, "account_id": job.account_id, "job_type": job.job_type}

        cost = self._budget.cost_for(job.account_id)
        check = self._budget.check_and_reserve(job.account_id, cost)
        if not check.ok:
            logger.info(
                f"skipped: balance {check.balance:g} below cost {cost:g}",
                extra={"event": "job_skipped", "status": SKIPPED, **log_extra},
            )
            return JobOutcome(status=SKIPPED, error=check.reason)

        snapshot = self._snapshots.get_snapshot(job.account_id)
        raw = self._complete_with_timeout(build_prompt(job, snapshot))

        parsed = self._parser.parse(raw)
        if isinstance(parsed, ParseErr):
            logger.warning(f"decision rejected: {parsed.reason}", extra={"event": "decision_rejected", **log_extra})
        decision = parsed.unwrap()

        report = self._effects.apply(job, decision, cost=cost)
        return JobOutcome(
            status=DONE,
            result={"decision": decision.to_document(), "cost": cost, "effects": report.to_document()},
        )

    def _complete_with_timeout(self, prompt: str) -> str:
        # The decision engine is the only long blocking call in the pipeline.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="decision-engine")
        future = pool.submit(self._decision_engine.complete, prompt)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise DecisionTimeoutError(self._timeout_seconds) from e
        finally:
            pool.shutdown(wait=False)
