"""Core runtime error types.

Every exception raised below the scheduler loop surfaces at its failure
boundary and becomes a `failed` job carrying the message. The HTTP layer maps
these types to status codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class ManagerRuntimeError(Exception):
    """Base class for runtime errors."""


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(ManagerRuntimeError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class NotFoundError(ManagerRuntimeError):
    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class ConflictError(ManagerRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ConfigurationError(ManagerRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ContractViolationError(ManagerRuntimeError):
    def __init__(self, message: str, code: str = "CONTRACT_VIOLATION", details: Any | None = None):
        self.code = code
        self.details = details
        super().__init__(message)


class DecisionParseError(ManagerRuntimeError):
    """The decision engine output could not be turned into a valid decision."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to parse decision output: {reason}")


class DecisionTimeoutError(ManagerRuntimeError):
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Decision engine timed out after {timeout_seconds:g}s")


class InsufficientBudgetError(ManagerRuntimeError):
    def __init__(self, account_id: str, balance: float, amount: float):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(f"Insufficient budget for {account_id}: balance={balance:g} required={amount:g}")
