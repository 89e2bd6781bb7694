from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

from bootstrap import Components, build_components
from config.settings import load_runtime_config
from conftest import (
    FakeClock,
    FakeDecisionEngine,
    RecordingChannel,
    StaticSnapshots,
    add_account,
    fenced,
    queue_job,
    ship_it_decision,
    write_runtime_config,
)
from executor.state_machine import DONE, FAILED, QUEUED, RUNNING, SKIPPED


def _components(tmp_path: Path, clock: FakeClock, engine: FakeDecisionEngine, channel: RecordingChannel, **scheduler: object) -> Components:
    config = load_runtime_config(write_runtime_config(tmp_path, **scheduler))
    return build_components(config, decision_engine=engine, channel=channel, snapshots=StaticSnapshots(), clock=clock)


def test_checkin_with_budget_sends_debits_and_schedules_followup(
    components: Components, decision_engine: FakeDecisionEngine, channel: RecordingChannel, clock: FakeClock
) -> None:
    stores = components.stores
    add_account(stores, balance=10, cost=6)
    job = queue_job(stores, clock, job_type="checkin")

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.skipped) == (1, 0, 0)
    assert len(decision_engine.prompts) == 1
    assert "Job type: checkin" in decision_engine.prompts[0]
    assert len(channel.sent) == 1
    assert channel.sent[0][1].title == "Ship it"
    assert channel.sent[0][1].cost == 6
    assert stores.accounts.get_balance("acct-1") == 4

    (entry,) = stores.accounts.list_ledger("acct-1")
    assert entry.amount == 6

    done = stores.jobs.get(job.job_id)
    assert done.status == DONE
    assert done.result["decision"]["title"] == "Ship it"

    children = [j for j in stores.jobs.list_for_account("acct-1") if j.job_id != job.job_id]
    assert len(children) == 1
    child = children[0]
    assert child.job_type == "tasks_nudge"
    assert child.status == QUEUED
    assert child.run_at == clock() + timedelta(minutes=240)
    assert child.run_at > done.claimed_at
    assert child.parent_job_id == job.job_id


def test_insufficient_budget_skips_without_calling_the_engine(
    components: Components, decision_engine: FakeDecisionEngine, channel: RecordingChannel, clock: FakeClock
) -> None:
    stores = components.stores
    add_account(stores, balance=5, cost=6)
    job = queue_job(stores, clock)

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.skipped) == (0, 0, 1)
    assert decision_engine.prompts == []
    assert channel.sent == []
    skipped = stores.jobs.get(job.job_id)
    assert skipped.status == SKIPPED
    assert skipped.error == "insufficient budget"
    assert stores.accounts.get_balance("acct-1") == 5
    assert list(stores.accounts.list_ledger("acct-1")) == []
    assert len(stores.jobs.list_for_account("acct-1")) == 1


def test_prose_output_fails_the_job_and_costs_nothing(
    components: Components, decision_engine: FakeDecisionEngine, channel: RecordingChannel, clock: FakeClock
) -> None:
    stores = components.stores
    add_account(stores, balance=10, cost=6)
    decision_engine.reply = "Great week! Keep posting every day and the numbers will follow."
    job = queue_job(stores, clock)

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.skipped) == (0, 1, 0)
    failed = stores.jobs.get(job.job_id)
    assert failed.status == FAILED
    assert "Failed to parse decision output" in failed.error
    assert channel.sent == []
    assert stores.accounts.get_balance("acct-1") == 10
    assert stores.actions.list_for_account("acct-1") == []


def test_decision_timeout_fails_the_job(tmp_path: Path, clock: FakeClock) -> None:
    engine = FakeDecisionEngine(fenced(ship_it_decision()), delay=1.0)
    channel = RecordingChannel()
    components = _components(tmp_path, clock, engine, channel, job_timeout_seconds=0.1)
    add_account(components.stores, balance=10, cost=6)
    job = queue_job(components.stores, clock)

    summary = components.scheduler.run_once()

    assert summary.failed == 1
    failed = components.stores.jobs.get(job.job_id)
    assert failed.status == FAILED
    assert "timed out" in failed.error
    assert channel.sent == []
    assert components.stores.accounts.get_balance("acct-1") == 10


def test_one_accounts_failure_does_not_touch_another(tmp_path: Path, clock: FakeClock) -> None:
    def reply(prompt: str) -> str:
        if '"acct-down"' in prompt:
            raise ConnectionError("decision engine unreachable")
        if '"acct-garbled"' in prompt:
            return "```json\n{\"title\": \"Oops\"\n```"
        return fenced(ship_it_decision(followups=[]))

    channel = RecordingChannel()
    components = _components(tmp_path, clock, FakeDecisionEngine(reply), channel)
    stores = components.stores
    jobs = {}
    for account_id in ("acct-ok", "acct-down", "acct-garbled"):
        add_account(stores, account_id, balance=10, cost=6)
        jobs[account_id] = queue_job(stores, clock, account_id=account_id)

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.skipped) == (1, 2, 0)
    assert stores.jobs.get(jobs["acct-ok"].job_id).status == DONE
    down = stores.jobs.get(jobs["acct-down"].job_id)
    assert down.status == FAILED
    assert down.error == "decision engine unreachable"
    assert stores.jobs.get(jobs["acct-garbled"].job_id).status == FAILED
    assert [a for a, _ in channel.sent] == ["acct-ok"]
    assert stores.accounts.get_balance("acct-down") == 10


def test_exception_without_message_records_its_class_name(tmp_path: Path, clock: FakeClock) -> None:
    def reply(prompt: str) -> str:
        raise RuntimeError()

    components = _components(tmp_path, clock, FakeDecisionEngine(reply), RecordingChannel())
    add_account(components.stores, balance=10, cost=6)
    job = queue_job(components.stores, clock)

    components.scheduler.run_once()

    assert components.stores.jobs.get(job.job_id).error == "RuntimeError"


def test_no_due_jobs_is_a_quiet_noop(components: Components, clock: FakeClock) -> None:
    queue_job(components.stores, clock, run_at=clock() + timedelta(hours=1))

    summary = components.scheduler.run_once()

    assert summary.to_document() == {"ok": True, "processed": 0, "failed": 0, "skipped": 0, "lost_claims": 0, "requeued": 0}


def test_batch_size_bounds_one_tick(tmp_path: Path, clock: FakeClock) -> None:
    channel = RecordingChannel()
    components = _components(tmp_path, clock, FakeDecisionEngine(fenced(ship_it_decision(followups=[]))), channel, batch_size=2)
    for i in range(5):
        add_account(components.stores, f"acct-{i}", balance=10, cost=6)
        queue_job(components.stores, clock, account_id=f"acct-{i}", run_at=clock() - timedelta(minutes=10 - i))

    assert components.scheduler.run_once().processed == 2
    assert [a for a, _ in sorted(channel.sent)] == ["acct-0", "acct-1"]
    assert components.scheduler.run_once().processed == 2
    assert components.scheduler.run_once().processed == 1


def test_abandoned_claims_are_requeued_after_twice_the_timeout(components: Components, clock: FakeClock) -> None:
    stores = components.stores
    add_account(stores, balance=10, cost=6)
    job = queue_job(stores, clock)
    assert stores.jobs.claim(job.job_id, now=clock())

    clock.advance(seconds=9)
    assert components.scheduler.run_once().requeued == 0
    assert stores.jobs.get(job.job_id).status == "running"

    clock.advance(seconds=2)
    summary = components.scheduler.run_once()

    assert summary.requeued == 1
    assert summary.processed == 1
    assert stores.jobs.get(job.job_id).status == DONE


def test_two_schedulers_never_run_the_same_job(tmp_path: Path, clock: FakeClock) -> None:
    channel = RecordingChannel()
    reply = fenced(ship_it_decision(followups=[]))
    first = _components(tmp_path, clock, FakeDecisionEngine(reply), channel)
    second = _components(tmp_path, clock, FakeDecisionEngine(reply), channel)
    for i in range(12):
        add_account(first.stores, f"acct-{i}", balance=10, cost=6)
        queue_job(first.stores, clock, account_id=f"acct-{i}")

    summaries = []
    barrier = threading.Barrier(2)

    def tick(components: Components) -> None:
        barrier.wait()
        summaries.append(components.scheduler.run_once())

    threads = [threading.Thread(target=tick, args=(c,)) for c in (first, second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(s.processed for s in summaries) == 12
    assert sum(s.failed for s in summaries) == 0
    assert sorted(a for a, _ in channel.sent) == sorted(f"acct-{i}" for i in range(12))
    assert all(first.stores.accounts.get_balance(f"acct-{i}") == 4 for i in range(12))


def test_serialized_accounts_skip_instead_of_overspending(tmp_path: Path, clock: FakeClock) -> None:
    channel = RecordingChannel()
    components = _components(
        tmp_path, clock, FakeDecisionEngine(fenced(ship_it_decision(followups=[]))), channel, serialize_accounts=True
    )
    add_account(components.stores, balance=10, cost=6)
    queue_job(components.stores, clock)
    queue_job(components.stores, clock, job_type="tasks_nudge")

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.skipped) == (1, 0, 1)
    assert components.stores.accounts.get_balance("acct-1") == 4


def test_run_forever_polls_until_stopped(tmp_path: Path, clock: FakeClock) -> None:
    channel = RecordingChannel()
    components = _components(tmp_path, clock, FakeDecisionEngine(fenced(ship_it_decision(followups=[]))), channel)
    add_account(components.stores, balance=10, cost=6)
    queue_job(components.stores, clock)

    stop = threading.Event()
    worker = threading.Thread(target=components.scheduler.run_forever, args=(stop,))
    worker.start()
    for _ in range(50):
        if channel.sent:
            break
        stop.wait(0.1)
    stop.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert len(channel.sent) == 1


def test_run_forever_returns_when_disabled(tmp_path: Path, clock: FakeClock) -> None:
    components = _components(tmp_path, clock, FakeDecisionEngine(), RecordingChannel(), enabled=False)
    components.scheduler.run_forever()


def test_outcome_of_a_reaped_claim_is_dropped(tmp_path: Path, clock: FakeClock) -> None:
    channel = RecordingChannel()
    holder: dict[str, object] = {}

    def stall_until_reaped(prompt: str) -> str:
        # Another scheduler reaps this claim and takes the job over meanwhile.
        stores = holder["stores"]
        clock.advance(seconds=11)
        stores.jobs.requeue_abandoned(claimed_before=clock() - timedelta(seconds=10), now=clock())
        holder["second_claim"] = clock()
        assert stores.jobs.claim(holder["job_id"], now=clock())
        return fenced(ship_it_decision(followups=[]))

    components = _components(tmp_path, clock, FakeDecisionEngine(stall_until_reaped), channel)
    holder["stores"] = components.stores
    add_account(components.stores, balance=20, cost=6)
    job = queue_job(components.stores, clock)
    holder["job_id"] = job.job_id

    summary = components.scheduler.run_once()

    assert (summary.processed, summary.failed, summary.lost_claims) == (0, 0, 1)
    current = components.stores.jobs.get(job.job_id)
    assert current.status == RUNNING
    assert current.claimed_at == holder["second_claim"]
    assert components.stores.jobs.finalize(job.job_id, DONE, now=clock(), result={}, claimed_at=holder["second_claim"])
