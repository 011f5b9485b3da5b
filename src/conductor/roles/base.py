from __future__ import annotations

import logging
from collections.abc import Mapping

from conductor.executors.base import RoleExecutor, RoleRequest
from conductor.models import Artifact
from conductor.roles.catalog import charter_for

logger = logging.getLogger(__name__)


class RoleAgent:
    """A capability tag bound to the executor that performs it."""

    def __init__(self, role: str, executor: RoleExecutor, *, charter: str | None = None) -> None:
        self.role = role
        self.executor = executor
        self.charter = charter if charter is not None else charter_for(role)

    async def run(self, request: RoleRequest) -> Artifact:
        if self.charter and "charter" not in request.context:
            request.context["charter"] = self.charter
        logger.debug("Invoking %s for stage %s", self.role, request.stage)
        artifact = await self.executor.invoke(self.role, request)
        if artifact.role != self.role:
            # Executors may not know their tag; artifacts are always attributed to it.
            artifact = Artifact(
                name=artifact.name or request.stage,
                role=self.role,
                content=artifact.content,
                data=artifact.data,
                created_at=artifact.created_at,
            )
        return artifact


class RoleRegistry:
    """Binds capability tags to executors.

    A tag with its own executor uses it; every other tag falls back to the
    default executor when one is set.
    """

    def __init__(
        self,
        executors: Mapping[str, RoleExecutor] | None = None,
        *,
        default: RoleExecutor | None = None,
    ) -> None:
        self.executors = dict(executors or {})
        self.default = default

    def has(self, role: str) -> bool:
        return bool(role) and (role in self.executors or self.default is not None)

    def bind(self, role: str) -> RoleAgent:
        executor = self.executors.get(role, self.default)
        if executor is None:
            raise KeyError(f"No executor bound for role '{role}'.")
        return RoleAgent(role, executor)
