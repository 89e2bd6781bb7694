"""Snapshot provider assembled from the runtime's own tables.

Deployments with a richer account model plug in their own SnapshotProvider;
this one covers what the runtime itself knows about an account.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from collaborators.interfaces import SnapshotProvider
from storage.interfaces import AccountStore, ActionStore, JobStore, NotificationStore
from utils import deep_get, format_rfc3339, utcnow

_RECENT_LIMIT = 5


class StoreSnapshotProvider(SnapshotProvider):
    def __init__(
        self,
        *,
        accounts: AccountStore,
        jobs: JobStore,
        actions: ActionStore,
        notifications: NotificationStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._accounts = accounts
        self._jobs = jobs
        self._actions = actions
        self._notifications = notifications
        self._clock = clock

    def get_snapshot(self, account_id: str) -> dict[str, Any]:
        settings = self._accounts.get(account_id)
        pending = self._actions.list_for_account(account_id, status="proposed")
        recent_jobs = self._jobs.list_for_account(account_id, limit=_RECENT_LIMIT)
        recent_messages = self._notifications.list_for_account(account_id, limit=_RECENT_LIMIT)

        return {
            "account_id": account_id,
            "generated_at": format_rfc3339(self._clock()),
            "budget": {
                "balance": settings.balance if settings else 0.0,
                "cost_per_cycle": settings.cost_per_cycle if settings else None,
            },
            "manager_mode": settings.mode if settings else None,
            "pending_actions": [
                {"domain": a.domain, "action_type": a.action_type, "title": a.title, "created_at": format_rfc3339(a.created_at)}
                for a in pending
            ],
            "recent_jobs": [
                {
                    "job_type": j.job_type,
                    "status": j.status,
                    "run_at": format_rfc3339(j.run_at),
                    "title": deep_get(j.result or {}, ["decision", "title"]),
                }
                for j in recent_jobs
            ],
            "recent_messages": [
                {"title": n.title, "priority": n.priority, "sent_at": format_rfc3339(n.created_at)} for n in recent_messages
            ],
        }
