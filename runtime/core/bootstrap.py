"""Wires stores, collaborators and services from a RuntimeConfig."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from budget.gate import BudgetGate
from channels.in_app import InAppMessageChannel
from collaborators.interfaces import DecisionEngine, MessageChannel, SnapshotProvider
from config.settings import RuntimeConfig
from decision.engine import OpenAIDecisionEngine
from decision.parser import DecisionParser
from executor.effects import EffectApplier
from executor.engine import AgentJobEngine
from executor.submission import JobSubmitter
from registry.schema_validator import SchemaValidator
from scheduler.enrollment import Enroller
from scheduler.runner import Scheduler
from snapshot.provider import StoreSnapshotProvider
from storage.sqlite import SQLiteStores
from utils import utcnow


@dataclass(frozen=True)
class Components:
    config: RuntimeConfig
    stores: SQLiteStores
    schema_validator: SchemaValidator
    scheduler: Scheduler
    enroller: Enroller
    submitter: JobSubmitter
    clock: Callable[[], datetime] = utcnow


def build_components(
    config: RuntimeConfig,
    *,
    decision_engine: DecisionEngine | None = None,
    channel: MessageChannel | None = None,
    snapshots: SnapshotProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Components:
    """Collaborators default to the OpenAI engine, the in-app channel and the store snapshot."""
    stores = SQLiteStores(config.storage.sqlite_path)
    schema_validator = SchemaValidator.load_from_dir(config.schemas_dir)

    if decision_engine is None:
        decision_engine = OpenAIDecisionEngine.from_config(config.decision_engine, timeout_seconds=config.scheduler.job_timeout_seconds)
    if channel is None:
        channel = InAppMessageChannel(stores.notifications, clock=clock)
    if snapshots is None:
        snapshots = StoreSnapshotProvider(
            accounts=stores.accounts,
            jobs=stores.jobs,
            actions=stores.actions,
            notifications=stores.notifications,
            clock=clock,
        )

    budget_gate = BudgetGate(accounts=stores.accounts, default_cost=config.budget.default_cost)
    effects = EffectApplier(
        channel=channel,
        accounts=stores.accounts,
        actions=stores.actions,
        jobs=stores.jobs,
        debit_category=config.budget.debit_category,
        clock=clock,
    )
    engine = AgentJobEngine(
        budget_gate=budget_gate,
        snapshots=snapshots,
        decision_engine=decision_engine,
        parser=DecisionParser(schema_validator),
        effects=effects,
        timeout_seconds=config.scheduler.job_timeout_seconds,
        clock=clock,
    )

    return Components(
        config=config,
        stores=stores,
        schema_validator=schema_validator,
        scheduler=Scheduler(config=config.scheduler, jobs=stores.jobs, engine=engine, clock=clock),
        enroller=Enroller(config=config.enrollment, accounts=stores.accounts, jobs=stores.jobs, budget_gate=budget_gate, clock=clock),
        submitter=JobSubmitter(schema_validator=schema_validator, jobs=stores.jobs, clock=clock),
        clock=clock,
    )
