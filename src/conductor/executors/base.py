from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from conductor.models import Artifact, Task

if TYPE_CHECKING:
    from conductor.channel import RolePort


class RoleExecutionFailure(RuntimeError):
    """Raised when an executor call for a role fails."""

    def __init__(
        self,
        message: str,
        *,
        role: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.exit_code = exit_code


class RoleTimeoutError(RoleExecutionFailure):
    """Raised when an executor call exceeds its time allowance."""


@dataclass(slots=True)
class RoleRequest:
    stage: str
    task: Task
    inputs: list[Artifact] = field(default_factory=list)
    instruction: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    port: RolePort | None = None

    def to_payload(self, role: str) -> dict[str, Any]:
        return {
            "role": role,
            "stage": self.stage,
            "instruction": self.instruction,
            "task": {
                "id": self.task.id,
                "description": self.task.description,
                "priority": self.task.priority,
            },
            "inputs": [artifact.to_dict() for artifact in self.inputs],
            "context": dict(self.context),
        }


class RoleExecutor(ABC):
    @abstractmethod
    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        """Run one role once and return the artifact it produced."""
