from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from conductor.channel import MessageChannel
from conductor.config import ConductorConfig
from conductor.models import (
    Artifact,
    FailureRecord,
    Finding,
    Gate,
    IterationReport,
    Task,
    utcnow_iso,
)
from conductor.store import TaskStore

if TYPE_CHECKING:
    from conductor.team import Team

logger = logging.getLogger(__name__)


def new_iteration_id() -> str:
    return f"iter-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class IterationContext:
    """Everything one iteration owns. Nothing here outlives the iteration."""

    task: Task
    config: ConductorConfig
    store: TaskStore
    iteration_id: str = field(default_factory=new_iteration_id)
    started_at: str = field(default_factory=utcnow_iso)
    deadline: float = 0.0
    artifacts: list[Artifact] = field(default_factory=list)
    approval: Gate = field(init=False)
    approval_history: list[dict[str, Any]] = field(default_factory=list)
    lead_decision: str | None = None
    gates: dict[str, Gate] = field(default_factory=dict)
    team: Team | None = None
    reports: dict[str, Artifact] = field(default_factory=dict)
    role_statuses: dict[str, str] = field(default_factory=dict)
    channel: MessageChannel = field(default_factory=MessageChannel)
    failures: list[FailureRecord] = field(default_factory=list)
    filed_tasks: list[str] = field(default_factory=list)
    filed_keys: set[tuple[str, str]] = field(default_factory=set)
    committed: bool = False
    halted_reason: str | None = None
    report: IterationReport | None = None

    def __post_init__(self) -> None:
        if not self.deadline:
            self.deadline = time.monotonic() + float(
                self.config.engine.iteration_timeout_seconds
            )
        self.approval = Gate(kind="approval", max_cycles=int(self.config.approval.max_rounds))

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def artifact(self, name: str) -> Artifact | None:
        for item in reversed(self.artifacts):
            if item.name == name:
                return item
        return None

    def add_artifact(self, artifact: Artifact) -> Artifact:
        self.artifacts.append(artifact)
        self.task = self.store.append_artifact(self.task.id, artifact)
        return artifact

    def record_failure(self, kind: str, scope: str, message: str) -> FailureRecord:
        record = FailureRecord(kind=kind, scope=scope, message=message)
        self.failures.append(record)
        logger.warning("[%s] %s in %s: %s", self.iteration_id, kind, scope, message)
        return record

    def halt(self, reason: str) -> None:
        if self.halted_reason is None:
            self.halted_reason = reason
            logger.warning("[%s] iteration halted: %s", self.iteration_id, reason)

    @property
    def halted(self) -> bool:
        return self.halted_reason is not None

    def file_follow_up(self, finding: Finding, *, scope: str) -> str | None:
        """File a non-blocking finding as a low-priority backlog task, once."""
        key = (finding.severity, finding.summary)
        if finding.severity == "info" or key in self.filed_keys:
            return None
        self.filed_keys.add(key)
        summary = finding.summary or f"{finding.severity} finding"
        task = self.store.create(
            f"[{scope}] {summary} (from {self.task.id})",
            priority=3,
            origin=self.task.id,
        )
        self.filed_tasks.append(task.id)
        return task.id
