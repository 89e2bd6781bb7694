"""Output contract parser.

Decision engine output is untrusted text. The parser extracts the first fenced
code block (or the whole text when there is none), parses it as JSON and
validates it against the `Decision` schema. The result is a tagged value,
`ParseOk` or `ParseErr`; nothing is ever default-filled into a decision that
the engine did not actually produce.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from errors import DecisionParseError
from registry.schema_validator import SchemaValidator

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)

# Violations listed in a rejection reason; the rest are summarized.
_MAX_REASON_VIOLATIONS = 5


@dataclass(frozen=True)
class CallToAction:
    label: str
    link: str
    action: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"label": self.label, "link": self.link}
        if self.action is not None:
            doc["action"] = self.action
        return doc


@dataclass(frozen=True)
class ActionProposal:
    domain: str
    action_type: str
    title: str
    payload: dict[str, Any] = field(default_factory=dict)
    entity_id: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "domain": self.domain,
            "action_type": self.action_type,
            "title": self.title,
            "payload": self.payload,
        }
        if self.entity_id is not None:
            doc["entity_id"] = self.entity_id
        return doc


@dataclass(frozen=True)
class FollowUp:
    job_type: str
    delay_minutes: int

    def to_document(self) -> dict[str, Any]:
        return {"job_type": self.job_type, "delay_minutes": self.delay_minutes}


@dataclass(frozen=True)
class Decision:
    title: str
    body: str
    priority: str = "normal"
    ctas: tuple[CallToAction, ...] = ()
    actions: tuple[ActionProposal, ...] = ()
    followups: tuple[FollowUp, ...] = ()

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Decision":
        """Build from an already schema-validated document."""
        return cls(
            title=doc["title"],
            body=doc["body"],
            priority=doc.get("priority", "normal"),
            ctas=tuple(
                CallToAction(label=c["label"], link=c["link"], action=c.get("action"))
                for c in doc.get("ctas", [])
            ),
            actions=tuple(
                ActionProposal(
                    domain=a["domain"],
                    action_type=a["action_type"],
                    title=a["title"],
                    payload=dict(a.get("payload") or {}),
                    entity_id=a.get("entity_id"),
                )
                for a in doc.get("actions", [])
            ),
            followups=tuple(FollowUp(job_type=f["job_type"], delay_minutes=int(f["delay_minutes"])) for f in doc.get("followups", [])),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "priority": self.priority,
            "ctas": [c.to_document() for c in self.ctas],
            "actions": [a.to_document() for a in self.actions],
            "followups": [f.to_document() for f in self.followups],
        }


@dataclass(frozen=True)
class ParseOk:
    decision: Decision
    ok: ClassVar[bool] = True

    def unwrap(self) -> Decision:
        return self.decision


@dataclass(frozen=True)
class ParseErr:
    reason: str
    ok: ClassVar[bool] = False

    def unwrap(self) -> Decision:
        raise DecisionParseError(self.reason)


ParseResult = Union[ParseOk, ParseErr]


def extract_payload(raw: str) -> str:
    """Contents of the first fenced block, else the whole text."""
    m = _FENCE_RE.search(raw)
    return (m.group(1) if m else raw).strip()


class DecisionParser:
    def __init__(self, schema_validator: SchemaValidator):
        self._schemas = schema_validator

    def parse(self, raw: str | None) -> ParseResult:
        if not raw or not raw.strip():
            return ParseErr("empty output")

        payload = extract_payload(raw)
        try:
            doc = json.loads(payload)
        except json.JSONDecodeError as e:
            return ParseErr(f"no valid JSON found ({e.msg} at line {e.lineno} column {e.colno})")
        except RecursionError:
            return ParseErr("no valid JSON found (nesting too deep)")

        if not isinstance(doc, dict):
            return ParseErr(f"decision must be a JSON object, got {type(doc).__name__}")

        violations = self._schemas.violations("Decision", doc)
        if violations:
            shown = "; ".join(f"{v.path}: {v.message}" for v in violations[:_MAX_REASON_VIOLATIONS])
            extra = len(violations) - _MAX_REASON_VIOLATIONS
            if extra > 0:
                shown += f"; and {extra} more"
            return ParseErr(f"decision failed schema validation: {shown}")

        return ParseOk(Decision.from_document(doc))
