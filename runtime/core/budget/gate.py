"""Budget gate: a read-only affordability check before any paid work.

The debit itself happens in the effect applier after a successful dispatch,
with the same cost value this gate checked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storage.interfaces import AccountStore

logger = logging.getLogger(__name__)

INSUFFICIENT_BUDGET = "insufficient budget"


@dataclass(frozen=True)
class BudgetCheck:
    ok: bool
    cost: float
    balance: float
    reason: str | None = None


class BudgetGate:
    def __init__(self, *, accounts: AccountStore, default_cost: float):
        self._accounts = accounts
        self._default_cost = default_cost

    def cost_for(self, account_id: str) -> float:
        """Per-cycle cost for an account, read once per job and carried through."""
        settings = self._accounts.get(account_id)
        if settings is not None and settings.cost_per_cycle > 0:
            return settings.cost_per_cycle
        return self._default_cost

    def check_and_reserve(self, account_id: str, cost: float) -> BudgetCheck:
        balance = self._accounts.get_balance(account_id)
        if balance < cost:
            return BudgetCheck(ok=False, cost=cost, balance=balance, reason=INSUFFICIENT_BUDGET)
        return BudgetCheck(ok=True, cost=cost, balance=balance)
