from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml

from config.logging import JSONFormatter, apply_logging_config
from config.settings import default_config_paths, load_runtime_config
from conftest import write_runtime_config
from errors import ConfigurationError


def test_shipped_config_loads_with_defaults() -> None:
    runtime_path, logging_path = default_config_paths()
    config = load_runtime_config(runtime_path)

    assert config.scheduler.batch_size == 20
    assert config.scheduler.abandon_after_seconds == config.scheduler.job_timeout_seconds * 2
    assert config.budget.default_cost == 6
    assert config.storage.sqlite_path.name == "manager_runtime.sqlite"
    assert (config.schemas_dir / "decision.schema.yaml").exists()
    assert logging_path.exists()


def test_relative_paths_resolve_against_the_config_file(tmp_path: Path) -> None:
    path = tmp_path / "conf" / "runtime.yaml"
    path.parent.mkdir()
    path.write_text(yaml.safe_dump({"storage": {"sqlite": {"path": "../state/x.sqlite"}}}), encoding="utf-8")

    config = load_runtime_config(path)

    assert config.storage.sqlite_path == (tmp_path / "state" / "x.sqlite").resolve()


def test_missing_or_invalid_config_fails_closed(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_runtime_config(tmp_path / "missing.yaml")

    bad_root = tmp_path / "list.yaml"
    bad_root.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_runtime_config(bad_root)

    with pytest.raises(ConfigurationError):
        load_runtime_config(write_runtime_config(tmp_path, batch_size=0))


def test_api_key_comes_from_the_named_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = load_runtime_config(write_runtime_config(tmp_path))
    monkeypatch.delenv("MANAGER_RUNTIME_TEST_KEY", raising=False)
    assert config.decision_engine.api_key() is None
    monkeypatch.setenv("MANAGER_RUNTIME_TEST_KEY", "sk-test")
    assert config.decision_engine.api_key() == "sk-test"


def test_json_formatter_carries_structured_extras() -> None:
    record = logging.LogRecord("scheduler.runner", logging.INFO, __file__, 1, "job_claimed", None, None)
    record.job_id = "job-1"
    record.account_id = "acct-1"
    record.event = "job_claimed"

    out = json.loads(JSONFormatter().format(record))

    assert out["msg"] == "job_claimed"
    assert out["level"] == "INFO"
    assert out["job_id"] == "job-1"
    assert out["account_id"] == "acct-1"
    assert "status" not in out


def test_shipped_logging_config_applies() -> None:
    _, logging_path = default_config_paths()
    apply_logging_config(logging_path)

    handlers = logging.getLogger().handlers
    assert any(isinstance(h.formatter, JSONFormatter) for h in handlers)


def test_logging_config_must_be_a_mapping(tmp_path: Path) -> None:
    bad = tmp_path / "logging.yaml"
    bad.write_text("- handlers\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        apply_logging_config(bad)
    with pytest.raises(ConfigurationError):
        apply_logging_config(tmp_path / "missing.yaml")
