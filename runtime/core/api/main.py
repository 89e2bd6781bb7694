"""FastAPI surface for the manager runtime.

`POST /scheduler/run` is the entry point an external timer calls. It always
answers 200 with per-job counts; job failures are recorded on the jobs.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, replace
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from bootstrap import Components, build_components
from config.logging import apply_logging_config
from config.settings import load_runtime_config, resolve_config_paths
from errors import (
    ConfigurationError,
    ConflictError,
    ContractViolationError,
    NotFoundError,
    SchemaValidationError,
)
from storage.interfaces import AccountSettings

logger = logging.getLogger(__name__)


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, ContractViolationError):
        return {"error": "CONTRACT_VIOLATION", "code": err.code, "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id}
    if isinstance(err, ConfigurationError):
        return {"error": "CONFIGURATION_ERROR", "message": str(err)}
    return {"error": "INTERNAL", "message": str(err)}


def _build_components() -> Components:
    runtime_cfg_path, logging_cfg_path = resolve_config_paths()
    runtime = load_runtime_config(runtime_cfg_path)
    apply_logging_config(logging_cfg_path)
    return build_components(runtime)


app = FastAPI(title="Manager Agent Runtime", version="0.1.0")


@app.on_event("startup")
def _startup() -> None:
    # Fail closed at startup if config, schemas or the decision engine key are missing.
    if getattr(app.state, "components", None) is None:
        app.state.components = _build_components()
    logger.info("runtime_started", extra={"event": "runtime_started"})


@app.exception_handler(SchemaValidationError)
def _schema_validation_handler(_req, exc: SchemaValidationError):
    return JSONResponse(status_code=422, content=_error_payload(exc))


@app.exception_handler(ContractViolationError)
def _contract_violation_handler(_req, exc: ContractViolationError):
    return JSONResponse(status_code=400, content=_error_payload(exc))


@app.exception_handler(ConflictError)
def _conflict_handler(_req, exc: ConflictError):
    return JSONResponse(status_code=409, content=_error_payload(exc))


@app.exception_handler(NotFoundError)
def _not_found_handler(_req, exc: NotFoundError):
    return JSONResponse(status_code=404, content=_error_payload(exc))


@app.exception_handler(Exception)
def _unhandled_handler(_req, exc: Exception):
    logger.exception("unhandled_error", extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=_error_payload(exc))


def _components() -> Components:
    return app.state.components


@app.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.post("/scheduler/run")
def run_scheduler() -> dict[str, Any]:
    """Process what is due. Safe to call repeatedly; claims keep jobs single-owner."""
    return _components().scheduler.run_once().to_document()


@app.post("/enrollment/run")
def run_enrollment() -> dict[str, Any]:
    return _components().enroller.run_once().to_document()


@app.post("/jobs")
def submit_job(request: dict[str, Any] = Body(...)) -> dict[str, Any]:
    job = _components().submitter.submit(request)
    return {"job": job.to_document()}


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    return {"job": _components().stores.jobs.get(job_id).to_document()}


@app.put("/accounts/{account_id}")
def upsert_account(account_id: str, settings: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Create or update an account. Omitted fields keep their stored (or default) value."""
    comps = _components()
    comps.schema_validator.validate("AccountSettings", settings)
    existing = comps.stores.accounts.get(account_id)
    if existing is None:
        existing = AccountSettings(
            account_id=account_id,
            balance=0,
            cost_per_cycle=comps.config.budget.default_cost,
            mode=comps.config.enrollment.default_mode,
        )
        initial_balance = float(settings.get("initial_balance", 0))
    else:
        initial_balance = 0.0

    comps.stores.accounts.upsert(
        replace(
            existing,
            cost_per_cycle=float(settings.get("cost_per_cycle", existing.cost_per_cycle)),
            mode=str(settings.get("mode", existing.mode)),
            quiet_start_hour=settings.get("quiet_start_hour", existing.quiet_start_hour),
            quiet_end_hour=settings.get("quiet_end_hour", existing.quiet_end_hour),
            active=bool(settings.get("active", existing.active)),
        )
    )
    if initial_balance > 0:
        comps.stores.accounts.credit(account_id, initial_balance, "initial_balance", {}, now=comps.clock())
    return {"account": asdict(comps.stores.accounts.get(account_id))}


@app.post("/accounts/{account_id}/credit")
def credit_account(account_id: str, request: dict[str, Any] = Body(...)) -> dict[str, Any]:
    comps = _components()
    comps.schema_validator.validate("CreditRequest", request)
    entry = comps.stores.accounts.credit(
        account_id,
        float(request["amount"]),
        "credit",
        {"note": request.get("note")} if request.get("note") else {},
        now=comps.clock(),
    )
    return {"entry": entry.to_document(), "balance": comps.stores.accounts.get_balance(account_id)}


@app.get("/accounts/{account_id}/ledger")
def get_ledger(account_id: str) -> dict[str, Any]:
    entries = _components().stores.accounts.list_ledger(account_id)
    return {"entries": [e.to_document() for e in entries]}


@app.get("/accounts/{account_id}/actions")
def get_actions(account_id: str, status: str | None = None) -> dict[str, Any]:
    actions = _components().stores.actions.list_for_account(account_id, status=status)
    return {"actions": [a.to_document() for a in actions]}


@app.get("/accounts/{account_id}/notifications")
def get_notifications(account_id: str, limit: int = 20) -> dict[str, Any]:
    notifications = _components().stores.notifications.list_for_account(account_id, limit=limit)
    return {"notifications": [n.to_document() for n in notifications]}
