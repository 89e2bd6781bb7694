"""Configuration loader for the manager runtime.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from errors import ConfigurationError


MANAGER_MODES = ("light", "moderate", "full")


@dataclass(frozen=True)
class StorageConfig:
    driver: str
    sqlite_path: Path


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    poll_interval_seconds: int
    batch_size: int
    max_workers: int
    job_timeout_seconds: float
    serialize_accounts: bool

    @property
    def abandon_after_seconds(self) -> float:
        # A claim older than twice the job timeout belongs to a dead worker.
        return self.job_timeout_seconds * 2


@dataclass(frozen=True)
class BudgetConfig:
    default_cost: float
    debit_category: str


@dataclass(frozen=True)
class DecisionEngineConfig:
    model: str
    temperature: float
    max_tokens: int
    api_key_env: str
    system_prompt_path: Path | None

    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) or None


@dataclass(frozen=True)
class EnrollmentConfig:
    default_mode: str
    max_accounts: int


@dataclass(frozen=True)
class RuntimeConfig:
    storage: StorageConfig
    scheduler: SchedulerConfig
    budget: BudgetConfig
    decision_engine: DecisionEngineConfig
    enrollment: EnrollmentConfig
    schemas_dir: Path
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive (got {value})")


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    storage_raw = raw.get("storage", {})
    scheduler_raw = raw.get("scheduler", {})
    budget_raw = raw.get("budget", {})
    engine_raw = raw.get("decision_engine", {})
    enrollment_raw = raw.get("enrollment", {})
    registry_raw = raw.get("registry", {})

    sqlite_path = _resolve_path(cfg_dir, str(storage_raw.get("sqlite", {}).get("path", "../state/manager_runtime.sqlite")))
    storage = StorageConfig(driver=str(storage_raw.get("driver", "sqlite")), sqlite_path=sqlite_path)
    if storage.driver != "sqlite":
        raise ConfigurationError(f"Unsupported storage driver: {storage.driver}")

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_raw.get("enabled", False)),
        poll_interval_seconds=int(scheduler_raw.get("poll_interval_seconds", 300)),
        batch_size=int(scheduler_raw.get("batch_size", 20)),
        max_workers=int(scheduler_raw.get("max_workers", 4)),
        job_timeout_seconds=float(scheduler_raw.get("job_timeout_seconds", 60)),
        serialize_accounts=bool(scheduler_raw.get("serialize_accounts", False)),
    )
    _positive("scheduler.poll_interval_seconds", scheduler.poll_interval_seconds)
    _positive("scheduler.batch_size", scheduler.batch_size)
    _positive("scheduler.max_workers", scheduler.max_workers)
    _positive("scheduler.job_timeout_seconds", scheduler.job_timeout_seconds)

    budget = BudgetConfig(
        default_cost=float(budget_raw.get("default_cost", 6)),
        debit_category=str(budget_raw.get("debit_category", "manager_message")),
    )
    _positive("budget.default_cost", budget.default_cost)

    prompt_path = engine_raw.get("system_prompt_path")
    decision_engine = DecisionEngineConfig(
        model=str(engine_raw.get("model", "gpt-4o-mini")),
        temperature=float(engine_raw.get("temperature", 0.7)),
        max_tokens=int(engine_raw.get("max_tokens", 500)),
        api_key_env=str(engine_raw.get("api_key_env", "OPENAI_API_KEY")),
        system_prompt_path=_resolve_path(cfg_dir, str(prompt_path)) if prompt_path else None,
    )

    enrollment = EnrollmentConfig(
        default_mode=str(enrollment_raw.get("default_mode", "moderate")),
        max_accounts=int(enrollment_raw.get("max_accounts", 1000)),
    )
    if enrollment.default_mode not in MANAGER_MODES:
        raise ConfigurationError(f"enrollment.default_mode must be one of {MANAGER_MODES}")

    return RuntimeConfig(
        storage=storage,
        scheduler=scheduler,
        budget=budget,
        decision_engine=decision_engine,
        enrollment=enrollment,
        schemas_dir=_resolve_path(cfg_dir, str(registry_raw.get("schemas_dir", "../../../schemas"))),
        config_dir=cfg_dir,
    )


def load_logging_config(logging_config_path: Path) -> dict[str, Any]:
    return _load_yaml(logging_config_path)


def default_config_paths() -> tuple[Path, Path]:
    # Default to the YAML files shipped next to this module.
    config_dir = Path(__file__).resolve().parent
    return config_dir / "runtime.yaml", config_dir / "logging.yaml"


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def resolve_config_paths() -> tuple[Path, Path]:
    default_runtime, default_logging = default_config_paths()
    runtime_path = _env_path("MANAGER_RUNTIME_CONFIG") or default_runtime
    logging_path = _env_path("MANAGER_LOGGING_CONFIG") or default_logging
    return runtime_path, logging_path
