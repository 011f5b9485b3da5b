from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["backlog", "ready", "in_progress", "blocked", "done"]
RoleStatus = Literal["idle", "working", "done", "failed"]
GateKind = Literal["approval", "build", "security", "ux", "performance", "quality"]
GateStatus = Literal["pending", "pass", "fail", "escalated"]

TASK_STATUSES: tuple[str, ...] = ("backlog", "ready", "in_progress", "blocked", "done")
GATE_ORDER: tuple[str, ...] = ("build", "security", "ux", "quality", "performance")
SEVERITIES: tuple[str, ...] = ("critical", "high", "medium", "low", "info")
SEVERITY_ALIASES = {
    "blocker": "critical",
    "major": "high",
    "minor": "low",
    "suggestion": "info",
}
SEVERITY_PATTERN = re.compile(
    r"\b(CRITICAL|HIGH|MEDIUM|LOW|INFO|BLOCKER|MAJOR|MINOR|SUGGESTION)\b[:\s-]*(.*)$",
)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def normalize_severity(raw: object) -> str | None:
    value = str(raw or "").strip().lower()
    value = SEVERITY_ALIASES.get(value, value)
    return value if value in SEVERITIES else None


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


@dataclass(frozen=True, slots=True)
class Artifact:
    """Named, immutable output of one role invocation."""

    name: str
    role: str
    content: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "content": self.content,
            "data": dict(self.data),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Artifact:
        data = payload.get("data")
        return cls(
            name=str(payload["name"]),
            role=str(payload.get("role", "")),
            content=str(payload.get("content", "")),
            data=data if isinstance(data, dict) else {},
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str
    priority: int = 2
    status: str = "backlog"
    depends_on: list[str] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    revision: int = 1
    blocked_reason: str | None = None
    origin: str | None = None

    def artifact(self, name: str) -> Artifact | None:
        for item in reversed(self.artifacts):
            if item.name == name:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "artifacts": [item.to_dict() for item in self.artifacts],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "revision": self.revision,
            "blocked_reason": self.blocked_reason,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            priority=int(payload.get("priority", 2)),
            status=str(payload.get("status", "backlog")),
            depends_on=[str(item) for item in payload.get("depends_on", [])],
            artifacts=[
                Artifact.from_dict(item)
                for item in payload.get("artifacts", [])
                if isinstance(item, dict)
            ],
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            revision=int(payload.get("revision", 1)),
            blocked_reason=payload.get("blocked_reason"),
            origin=payload.get("origin"),
        )


@dataclass(frozen=True, slots=True)
class Finding:
    severity: str
    summary: str
    source: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity, "summary": self.summary, "source": self.source}


def parse_findings(artifact: Artifact) -> list[Finding]:
    """Read findings from an artifact.

    Structured findings in ``data["findings"]`` win. Otherwise JSON lines in the
    content are consulted, and finally severity-labelled text lines such as
    ``HIGH: token logged in plain text``.
    """
    structured: list[Finding] = []
    sources: list[dict[str, Any]] = [artifact.data, *extract_json_objects(artifact.content)]
    for payload in sources:
        items = payload.get("findings")
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict):
                continue
            severity = normalize_severity(item.get("severity"))
            if severity is None:
                continue
            summary = str(item.get("summary") or item.get("message") or "").strip()
            structured.append(Finding(severity=severity, summary=summary, source=artifact.role))
        if structured or "findings" in payload:
            return structured

    findings: list[Finding] = []
    for raw_line in artifact.content.splitlines():
        line = raw_line.strip().lstrip("-* ")
        match = SEVERITY_PATTERN.match(line)
        if not match:
            continue
        severity = normalize_severity(match.group(1))
        if severity is None:
            continue
        findings.append(
            Finding(severity=severity, summary=match.group(2).strip(), source=artifact.role)
        )
    return findings


@dataclass(slots=True)
class Message:
    sender: str
    recipient: str
    payload: Any
    sequence: int
    timestamp: str = field(default_factory=utcnow_iso)
    delivered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RoleInstance:
    role: str
    status: str = "idle"
    report: Artifact | None = None
    failure: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in {"done", "failed"}


@dataclass(slots=True)
class Gate:
    kind: str
    max_cycles: int
    blocking: bool = True
    status: str = "pending"
    cycles: int = 0
    reason: str = ""
    findings: list[Finding] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.cycles >= self.max_cycles

    @property
    def halts_progress(self) -> bool:
        return self.blocking and self.status in {"fail", "escalated"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "cycles": self.cycles,
            "max_cycles": self.max_cycles,
            "blocking": self.blocking,
            "reason": self.reason,
            "findings": [item.to_dict() for item in self.findings],
        }


@dataclass(slots=True)
class FailureRecord:
    kind: str
    scope: str
    message: str
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class IterationReport:
    iteration_id: str
    task_id: str
    final_status: str
    started_at: str
    ended_at: str
    gates: dict[str, dict[str, Any]]
    approval: dict[str, Any]
    roles: dict[str, str]
    message_digest: dict[str, Any]
    failures: list[dict[str, str]]
    filed_tasks: list[str]
    committed: bool
    escalation_reason: str | None = None
    recommendation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationReport:
        return cls(
            iteration_id=str(payload["iteration_id"]),
            task_id=str(payload["task_id"]),
            final_status=str(payload["final_status"]),
            started_at=str(payload.get("started_at", "")),
            ended_at=str(payload.get("ended_at", "")),
            gates=dict(payload.get("gates", {})),
            approval=dict(payload.get("approval", {})),
            roles=dict(payload.get("roles", {})),
            message_digest=dict(payload.get("message_digest", {})),
            failures=list(payload.get("failures", [])),
            filed_tasks=list(payload.get("filed_tasks", [])),
            committed=bool(payload.get("committed", False)),
            escalation_reason=payload.get("escalation_reason"),
            recommendation=payload.get("recommendation"),
        )
