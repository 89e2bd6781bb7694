"""DB-agnostic storage interfaces.

The runtime is stateless except for DB-backed state. These interfaces define
the persistence boundary for:
- Agent jobs and their claim protocol
- Accounts: spendable balance, per-cycle cost and manager settings
- The budget ledger (append-only)
- Proposed actions awaiting human review
- In-app notifications (the outbox of the in-app message channel)

Concrete drivers live in `storage/` (SQLite is the only one today).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable

from utils import format_rfc3339


@dataclass(frozen=True)
class Job:
    job_id: str
    account_id: str
    job_type: str
    status: str
    run_at: datetime
    created_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    claimed_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def parent_job_id(self) -> str | None:
        parent = self.context.get("parent_job_id")
        return str(parent) if parent else None

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        for k in ("run_at", "created_at", "claimed_at", "finished_at"):
            if doc[k] is not None:
                doc[k] = format_rfc3339(doc[k])
        return doc


@dataclass(frozen=True)
class AccountSettings:
    account_id: str
    balance: float
    cost_per_cycle: float
    mode: str
    quiet_start_hour: int | None = None
    quiet_end_hour: int | None = None
    active: bool = True


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: str
    account_id: str
    amount: float
    category: str
    metadata: dict[str, Any]
    created_at: datetime
    job_id: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["created_at"] = format_rfc3339(self.created_at)
        return doc


@dataclass(frozen=True)
class ProposedAction:
    action_id: str
    account_id: str
    job_id: str
    domain: str
    action_type: str
    title: str
    payload: dict[str, Any]
    status: str
    created_at: datetime
    entity_id: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["created_at"] = format_rfc3339(self.created_at)
        return doc


@dataclass(frozen=True)
class StoredNotification:
    notification_id: str
    account_id: str
    job_id: str | None
    channel: str
    title: str
    body: str
    ctas: list[dict[str, Any]]
    priority: str
    created_at: datetime
    cost: float = 0.0

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["created_at"] = format_rfc3339(self.created_at)
        return doc


class JobStore(ABC):
    @abstractmethod
    def create(self, job: Job) -> None:
        """Insert a new job. Must fail if job_id already exists."""

    @abstractmethod
    def get(self, job_id: str) -> Job:
        """Fetch a job by id. Must raise if not found."""

    @abstractmethod
    def fetch_due(self, *, now: datetime, limit: int) -> list[Job]:
        """Queued jobs with run_at <= now, oldest run_at first, at most `limit`."""

    @abstractmethod
    def claim(self, job_id: str, *, now: datetime) -> bool:
        """Atomically move queued -> running. True only for the single winner."""

    @abstractmethod
    def finalize(
        self,
        job_id: str,
        status: str,
        *,
        now: datetime,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        claimed_at: datetime | None = None,
    ) -> bool:
        """Write a terminal status. Returns False when already in that status.

        With `claimed_at` the write only lands on that claim; once the job was
        requeued or claimed again it returns False and changes nothing.
        """

    @abstractmethod
    def requeue_abandoned(self, *, claimed_before: datetime, now: datetime) -> list[str]:
        """Reset running jobs claimed before the cutoff back to queued."""

    @abstractmethod
    def last_created_for_account(self, account_id: str) -> Job | None:
        """Most recently created job for an account, any status."""

    @abstractmethod
    def list_for_account(self, account_id: str, *, limit: int = 20) -> list[Job]:
        """Most recent jobs for an account, newest first."""


class AccountStore(ABC):
    @abstractmethod
    def upsert(self, settings: AccountSettings) -> None:
        """Create an account, or update its settings; an existing balance is kept."""

    @abstractmethod
    def get(self, account_id: str) -> AccountSettings | None:
        """Account settings, or None for an unknown account."""

    @abstractmethod
    def list_account_ids(self, *, limit: int) -> list[str]:
        """Active account ids."""

    @abstractmethod
    def get_balance(self, account_id: str) -> float:
        """Current spendable balance; unknown accounts have 0."""

    @abstractmethod
    def debit(self, account_id: str, amount: float, category: str, metadata: dict[str, Any], *, now: datetime) -> LedgerEntry:
        """Debit and append the ledger entry in one transaction.

        Must refuse (InsufficientBudgetError) rather than go negative. A debit
        carrying metadata.job_id is applied at most once per job; a repeat
        returns the existing entry.
        """

    @abstractmethod
    def credit(self, account_id: str, amount: float, category: str, metadata: dict[str, Any], *, now: datetime) -> LedgerEntry:
        """Add to the balance and append a ledger entry."""

    @abstractmethod
    def list_ledger(self, account_id: str) -> Iterable[LedgerEntry]:
        """Ledger entries for an account, oldest first."""


class ActionStore(ABC):
    @abstractmethod
    def create(self, action: ProposedAction) -> None:
        """Persist a proposed action. Must fail if action_id already exists."""

    @abstractmethod
    def list_for_account(self, account_id: str, *, status: str | None = None) -> list[ProposedAction]:
        """Actions for an account, oldest first, optionally filtered by status."""


class NotificationStore(ABC):
    @abstractmethod
    def append(self, notification: StoredNotification) -> None:
        """Append an immutable notification."""

    @abstractmethod
    def list_for_account(self, account_id: str, *, limit: int = 20) -> list[StoredNotification]:
        """Most recent notifications for an account, newest first."""
