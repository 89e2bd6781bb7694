"""Contracts of the external collaborators the scheduler depends on.

Each is deliberately narrow; the scheduler never looks inside a snapshot and
never retries a collaborator on its own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    ctas: list[dict[str, Any]] = field(default_factory=list)
    priority: str = "normal"
    job_id: str | None = None
    cost: float = 0.0


class SnapshotProvider(ABC):
    @abstractmethod
    def get_snapshot(self, account_id: str) -> dict[str, Any]:
        """Point-in-time account document.

        Must not raise for missing sub-resources; absent data is represented as
        empty/default values inside the document.
        """


class DecisionEngine(ABC):
    @abstractmethod
    def complete(self, prompt: str) -> str:
        """Raw text expected (not guaranteed) to contain one JSON decision object."""


class MessageChannel(ABC):
    @abstractmethod
    def send(self, account_id: str, notification: Notification) -> None:
        """Deliver a notification. Raising means the message was not sent."""
