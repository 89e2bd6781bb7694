from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from bootstrap import Components, build_components
from collaborators.interfaces import DecisionEngine, MessageChannel, Notification, SnapshotProvider
from config.settings import RuntimeConfig, load_runtime_config
from executor.state_machine import QUEUED
from registry.schema_validator import SchemaValidator, default_schemas_dir
from storage.interfaces import AccountSettings, Job
from storage.sqlite import SQLiteStores
from utils import new_id

UTC = timezone.utc
START = datetime(2026, 10, 17, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)


class FakeDecisionEngine(DecisionEngine):
    def __init__(self, reply: str | Callable[[str], str] = "", *, delay: float = 0.0):
        self.reply = reply
        self.delay = delay
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        return self.reply(prompt) if callable(self.reply) else self.reply


class RecordingChannel(MessageChannel):
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, Notification]] = []

    def send(self, account_id: str, notification: Notification) -> None:
        if self.fail:
            raise ConnectionError("channel unavailable")
        self.sent.append((account_id, notification))


class StaticSnapshots(SnapshotProvider):
    def get_snapshot(self, account_id: str) -> dict[str, Any]:
        return {"account_id": account_id, "artist_name": "Test Artist", "tasks_overdue": 2}


def fenced(doc: dict[str, Any], *, prose: bool = True) -> str:
    block = "```json\n" + json.dumps(doc, indent=2) + "\n```"
    if not prose:
        return block
    return "Here is today's update for you.\n\n" + block + "\n\nLet me know if you need anything else."


def ship_it_decision(**overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "title": "Ship it",
        "body": "Your single is mastered. Schedule the release and pitch playlists today.",
        "priority": "high",
        "ctas": [{"label": "Open Calendar", "link": "/calendar"}],
        "actions": [],
        "followups": [{"job_type": "tasks_nudge", "delay_minutes": 240}],
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores(tmp_path: Path) -> SQLiteStores:
    return SQLiteStores(tmp_path / "state" / "runtime.sqlite")


@pytest.fixture
def schema_validator() -> SchemaValidator:
    return SchemaValidator.load_from_dir(default_schemas_dir())


def write_runtime_config(tmp_path: Path, **scheduler_overrides: Any) -> Path:
    scheduler = {
        "enabled": True,
        "poll_interval_seconds": 1,
        "batch_size": 20,
        "max_workers": 4,
        "job_timeout_seconds": 5,
        "serialize_accounts": False,
    }
    scheduler.update(scheduler_overrides)
    raw = {
        "storage": {"driver": "sqlite", "sqlite": {"path": str(tmp_path / "state" / "runtime.sqlite")}},
        "scheduler": scheduler,
        "budget": {"default_cost": 6, "debit_category": "manager_message"},
        "decision_engine": {"model": "test-model", "api_key_env": "MANAGER_RUNTIME_TEST_KEY"},
        "enrollment": {"default_mode": "moderate", "max_accounts": 100},
        "registry": {"schemas_dir": str(default_schemas_dir())},
    }
    path = tmp_path / "runtime.yaml"
    path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def runtime_config(tmp_path: Path) -> RuntimeConfig:
    return load_runtime_config(write_runtime_config(tmp_path))


@pytest.fixture
def decision_engine() -> FakeDecisionEngine:
    return FakeDecisionEngine(fenced(ship_it_decision()))


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def components(runtime_config: RuntimeConfig, decision_engine: FakeDecisionEngine, channel: RecordingChannel, clock: FakeClock) -> Components:
    return build_components(
        runtime_config,
        decision_engine=decision_engine,
        channel=channel,
        snapshots=StaticSnapshots(),
        clock=clock,
    )


def add_account(stores: SQLiteStores, account_id: str = "acct-1", *, balance: float = 10, cost: float = 6, **kwargs: Any) -> None:
    stores.accounts.upsert(
        AccountSettings(account_id=account_id, balance=balance, cost_per_cycle=cost, mode=kwargs.pop("mode", "moderate"), **kwargs)
    )


def queue_job(stores: SQLiteStores, clock: FakeClock, *, account_id: str = "acct-1", job_type: str = "checkin", run_at: datetime | None = None, **context: Any) -> Job:
    job = Job(
        job_id=new_id(),
        account_id=account_id,
        job_type=job_type,
        status=QUEUED,
        run_at=run_at or clock(),
        created_at=clock(),
        context=dict(context),
    )
    stores.jobs.create(job)
    return job
