"""SQLite storage driver.

This module provides the SQLite implementation behind the DB-agnostic
storage interfaces. Every connection is short-lived and in autocommit mode;
multi-statement writes open an explicit `BEGIN IMMEDIATE` transaction.

Tables are append-only where the ledger and audit trail require it:
- ledger: append-only, at most one debit per job
- notifications: append-only outbox
- jobs: never deleted; only status/claim/result columns change
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from errors import ConflictError, ConfigurationError, InsufficientBudgetError, NotFoundError
from executor.state_machine import QUEUED, RUNNING, check_transition, require_terminal
from storage.interfaces import (
    AccountSettings,
    AccountStore,
    ActionStore,
    Job,
    JobStore,
    LedgerEntry,
    NotificationStore,
    ProposedAction,
    StoredNotification,
)
from utils import format_rfc3339, json_dumps, json_loads_object, new_id, parse_rfc3339, utcnow

SCHEMA_VERSION = 1


def _ts(dt: datetime | None) -> str | None:
    return format_rfc3339(dt) if dt is not None else None


def _dt(raw: str | None) -> datetime | None:
    return parse_rfc3339(raw) if raw else None


def _row_to_job(row: sqlite3.Row) -> Job:
    result_json = row["result_json"]
    return Job(
        job_id=row["job_id"],
        account_id=row["account_id"],
        job_type=row["job_type"],
        status=row["status"],
        run_at=parse_rfc3339(row["run_at"]),
        created_at=parse_rfc3339(row["created_at"]),
        context=json_loads_object(row["context_json"]),
        result=json_loads_object(result_json) if result_json else None,
        error=row["error"],
        claimed_at=_dt(row["claimed_at"]),
        finished_at=_dt(row["finished_at"]),
    )


def _row_to_account(row: sqlite3.Row) -> AccountSettings:
    return AccountSettings(
        account_id=row["account_id"],
        balance=float(row["balance"]),
        cost_per_cycle=float(row["cost_per_cycle"]),
        mode=row["mode"],
        quiet_start_hour=row["quiet_start_hour"],
        quiet_end_hour=row["quiet_end_hour"],
        active=bool(row["active"]),
    )


def _row_to_ledger(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        account_id=row["account_id"],
        amount=float(row["amount"]),
        category=row["category"],
        metadata=json_loads_object(row["metadata_json"]),
        created_at=parse_rfc3339(row["created_at"]),
        job_id=row["job_id"],
    )


def _row_to_action(row: sqlite3.Row) -> ProposedAction:
    return ProposedAction(
        action_id=row["action_id"],
        account_id=row["account_id"],
        job_id=row["job_id"],
        domain=row["domain"],
        action_type=row["action_type"],
        title=row["title"],
        payload=json_loads_object(row["payload_json"]),
        status=row["status"],
        created_at=parse_rfc3339(row["created_at"]),
        entity_id=row["entity_id"],
    )


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (SCHEMA_VERSION,))
                version = SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != SCHEMA_VERSION:
                raise ConfigurationError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  job_id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  job_type TEXT NOT NULL,
                  status TEXT NOT NULL,
                  run_at TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  claimed_at TEXT,
                  finished_at TEXT,
                  context_json TEXT NOT NULL,
                  result_json TEXT,
                  error TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_run_at ON jobs(status, run_at);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_account_created_at ON jobs(account_id, created_at);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  account_id TEXT PRIMARY KEY,
                  balance REAL NOT NULL CHECK (balance >= 0),
                  cost_per_cycle REAL NOT NULL,
                  mode TEXT NOT NULL,
                  quiet_start_hour INTEGER,
                  quiet_end_hour INTEGER,
                  active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger (
                  entry_id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  job_id TEXT UNIQUE,
                  amount REAL NOT NULL,
                  category TEXT NOT NULL,
                  metadata_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_account_id ON ledger(account_id, created_at);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS proposed_actions (
                  action_id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  job_id TEXT NOT NULL,
                  domain TEXT NOT NULL,
                  action_type TEXT NOT NULL,
                  title TEXT NOT NULL,
                  entity_id TEXT,
                  payload_json TEXT NOT NULL,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_actions_account_status ON proposed_actions(account_id, status);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                  notification_id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  job_id TEXT,
                  channel TEXT NOT NULL,
                  title TEXT NOT NULL,
                  body TEXT NOT NULL,
                  ctas_json TEXT NOT NULL,
                  priority TEXT NOT NULL,
                  cost REAL NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_account ON notifications(account_id, created_at);")


class SQLiteJobStore(JobStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def create(self, job: Job) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs(
                      job_id, account_id, job_type, status, run_at, created_at, updated_at,
                      claimed_at, finished_at, context_json, result_json, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        job.job_id,
                        job.account_id,
                        job.job_type,
                        job.status,
                        format_rfc3339(job.run_at),
                        format_rfc3339(job.created_at),
                        format_rfc3339(job.created_at),
                        _ts(job.claimed_at),
                        _ts(job.finished_at),
                        json_dumps(job.context),
                        json_dumps(job.result) if job.result is not None else None,
                        job.error,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Job already exists: {job.job_id}") from e

    def get(self, job_id: str) -> Job:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?;", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError("Job", job_id)
            return _row_to_job(row)

    def fetch_due(self, *, now: datetime, limit: int) -> list[Job]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? AND run_at <= ? ORDER BY run_at ASC, created_at ASC LIMIT ?;",
                (QUEUED, format_rfc3339(now), int(limit)),
            ).fetchall()
            return [_row_to_job(r) for r in rows]

    def claim(self, job_id: str, *, now: datetime) -> bool:
        # Single conditional write: the affected-row count decides the winner.
        ts = format_rfc3339(now)
        with self._db.connect() as conn:
            cur = conn.execute(
                "UPDATE jobs SET status = ?, claimed_at = ?, updated_at = ? WHERE job_id = ? AND status = ?;",
                (RUNNING, ts, ts, job_id, QUEUED),
            )
            return cur.rowcount == 1

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
        require_terminal(status)
        ts = format_rfc3339(now)
        sql = """
            UPDATE jobs SET status = ?, result_json = ?, error = ?, finished_at = ?, updated_at = ?
            WHERE job_id = ? AND status = ?
        """
        params: list[Any] = [status, json_dumps(result) if result is not None else None, error, ts, ts, job_id, RUNNING]
        if claimed_at is not None:
            sql += " AND claimed_at = ?"
            params.append(format_rfc3339(claimed_at))
        with self._db.connect() as conn:
            cur = conn.execute(sql + ";", params)
            if cur.rowcount == 1:
                return True

            row = conn.execute("SELECT status, claimed_at FROM jobs WHERE job_id = ?;", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError("Job", job_id)
            if claimed_at is not None and row["claimed_at"] != format_rfc3339(claimed_at):
                # The claim was reaped; whoever holds the job now owns its outcome.
                return False
            current = str(row["status"])
            if check_transition(current, status):
                # Legal on paper but the conditional write lost: someone moved it first.
                raise ConflictError(f"Job {job_id} changed concurrently (status={current})")
            return False

    def requeue_abandoned(self, *, claimed_before: datetime, now: datetime) -> list[str]:
        cutoff = format_rfc3339(claimed_before)
        ts = format_rfc3339(now)
        requeued: list[str] = []
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT job_id FROM jobs WHERE status = ? AND claimed_at <= ? ORDER BY claimed_at ASC;",
                (RUNNING, cutoff),
            ).fetchall()
            for r in rows:
                cur = conn.execute(
                    """
                    UPDATE jobs SET status = ?, claimed_at = NULL, updated_at = ?
                    WHERE job_id = ? AND status = ? AND claimed_at <= ?;
                    """,
                    (QUEUED, ts, r["job_id"], RUNNING, cutoff),
                )
                if cur.rowcount == 1:
                    requeued.append(str(r["job_id"]))
        return requeued

    def last_created_for_account(self, account_id: str) -> Job | None:
        jobs = self.list_for_account(account_id, limit=1)
        return jobs[0] if jobs else None

    def list_for_account(self, account_id: str, *, limit: int = 20) -> list[Job]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?;",
                (account_id, int(limit)),
            ).fetchall()
            return [_row_to_job(r) for r in rows]


class SQLiteAccountStore(AccountStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def upsert(self, settings: AccountSettings) -> None:
        """Insert a new account, or update settings of an existing one.

        The balance is written only when the account is created. After that it
        moves only through `debit` and `credit`, each of which appends a ledger
        entry.
        """
        ts = format_rfc3339(utcnow())
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO accounts(
                  account_id, balance, cost_per_cycle, mode, quiet_start_hour, quiet_end_hour, active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  cost_per_cycle = excluded.cost_per_cycle,
                  mode = excluded.mode,
                  quiet_start_hour = excluded.quiet_start_hour,
                  quiet_end_hour = excluded.quiet_end_hour,
                  active = excluded.active,
                  updated_at = excluded.updated_at;
                """,
                (
                    settings.account_id,
                    float(settings.balance),
                    float(settings.cost_per_cycle),
                    settings.mode,
                    settings.quiet_start_hour,
                    settings.quiet_end_hour,
                    1 if settings.active else 0,
                    ts,
                    ts,
                ),
            )

    def get(self, account_id: str) -> AccountSettings | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE account_id = ?;", (account_id,)).fetchone()
            return _row_to_account(row) if row is not None else None

    def list_account_ids(self, *, limit: int) -> list[str]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT account_id FROM accounts WHERE active = 1 ORDER BY account_id ASC LIMIT ?;",
                (int(limit),),
            ).fetchall()
            return [str(r["account_id"]) for r in rows]

    def get_balance(self, account_id: str) -> float:
        with self._db.connect() as conn:
            row = conn.execute("SELECT balance FROM accounts WHERE account_id = ?;", (account_id,)).fetchone()
            return float(row["balance"]) if row is not None else 0.0

    def debit(self, account_id: str, amount: float, category: str, metadata: dict[str, Any], *, now: datetime) -> LedgerEntry:
        job_id = metadata.get("job_id")
        entry = LedgerEntry(
            entry_id=new_id(),
            account_id=account_id,
            amount=float(amount),
            category=category,
            metadata=dict(metadata),
            created_at=now,
            job_id=str(job_id) if job_id else None,
        )
        with self._db.transaction() as conn:
            if entry.job_id is not None:
                existing = conn.execute("SELECT * FROM ledger WHERE job_id = ?;", (entry.job_id,)).fetchone()
                if existing is not None:
                    return _row_to_ledger(existing)

            cur = conn.execute(
                "UPDATE accounts SET balance = balance - ?, updated_at = ? WHERE account_id = ? AND balance >= ?;",
                (entry.amount, format_rfc3339(now), account_id, entry.amount),
            )
            if cur.rowcount != 1:
                row = conn.execute("SELECT balance FROM accounts WHERE account_id = ?;", (account_id,)).fetchone()
                balance = float(row["balance"]) if row is not None else 0.0
                raise InsufficientBudgetError(account_id, balance, entry.amount)

            self._insert_ledger(conn, entry)
        return entry

    def credit(self, account_id: str, amount: float, category: str, metadata: dict[str, Any], *, now: datetime) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=new_id(),
            account_id=account_id,
            amount=float(amount),
            category=category,
            metadata=dict(metadata),
            created_at=now,
        )
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE accounts SET balance = balance + ?, updated_at = ? WHERE account_id = ?;",
                (entry.amount, format_rfc3339(now), account_id),
            )
            if cur.rowcount != 1:
                raise NotFoundError("Account", account_id)
            self._insert_ledger(conn, entry)
        return entry

    @staticmethod
    def _insert_ledger(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO ledger(entry_id, account_id, job_id, amount, category, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                entry.entry_id,
                entry.account_id,
                entry.job_id,
                entry.amount,
                entry.category,
                json_dumps(entry.metadata),
                format_rfc3339(entry.created_at),
            ),
        )

    def list_ledger(self, account_id: str) -> Iterable[LedgerEntry]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger WHERE account_id = ? ORDER BY created_at ASC, rowid ASC;",
                (account_id,),
            ).fetchall()
            return [_row_to_ledger(r) for r in rows]


class SQLiteActionStore(ActionStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def create(self, action: ProposedAction) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO proposed_actions(
                      action_id, account_id, job_id, domain, action_type, title, entity_id, payload_json, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        action.action_id,
                        action.account_id,
                        action.job_id,
                        action.domain,
                        action.action_type,
                        action.title,
                        action.entity_id,
                        json_dumps(action.payload),
                        action.status,
                        format_rfc3339(action.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Proposed action already exists: {action.action_id}") from e

    def list_for_account(self, account_id: str, *, status: str | None = None) -> list[ProposedAction]:
        with self._db.connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM proposed_actions WHERE account_id = ? ORDER BY created_at ASC, rowid ASC;",
                    (account_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM proposed_actions WHERE account_id = ? AND status = ? ORDER BY created_at ASC, rowid ASC;",
                    (account_id, status),
                ).fetchall()
            return [_row_to_action(r) for r in rows]


class SQLiteNotificationStore(NotificationStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def append(self, notification: StoredNotification) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO notifications(
                      notification_id, account_id, job_id, channel, title, body, ctas_json, priority, cost, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        notification.notification_id,
                        notification.account_id,
                        notification.job_id,
                        notification.channel,
                        notification.title,
                        notification.body,
                        json_dumps(notification.ctas),
                        notification.priority,
                        float(notification.cost),
                        format_rfc3339(notification.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Notification already exists: {notification.notification_id}") from e

    def list_for_account(self, account_id: str, *, limit: int = 20) -> list[StoredNotification]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?;",
                (account_id, int(limit)),
            ).fetchall()
            return [
                StoredNotification(
                    notification_id=r["notification_id"],
                    account_id=r["account_id"],
                    job_id=r["job_id"],
                    channel=r["channel"],
                    title=r["title"],
                    body=r["body"],
                    ctas=list(json.loads(r["ctas_json"])),
                    priority=r["priority"],
                    created_at=parse_rfc3339(r["created_at"]),
                    cost=float(r["cost"]),
                )
                for r in rows
            ]


class SQLiteStores:
    """Convenience container for the stores backed by one SQLite file."""

    def __init__(self, sqlite_path: Path):
        db = SQLiteDatabase(sqlite_path)
        self.jobs: JobStore = SQLiteJobStore(db)
        self.accounts: AccountStore = SQLiteAccountStore(db)
        self.actions: ActionStore = SQLiteActionStore(db)
        self.notifications: NotificationStore = SQLiteNotificationStore(db)
