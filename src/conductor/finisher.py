from __future__ import annotations

import logging

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.executors.base import RoleExecutionFailure, RoleRequest
from conductor.gates import SeverityClassifier
from conductor.models import Artifact, Finding, parse_findings
from conductor.roles import RoleRegistry

logger = logging.getLogger(__name__)

VISUAL_BLOCKING = ("critical", "high")


class Finisher:
    """Visual check, commit, documentation. Runs only on a clean iteration."""

    def __init__(self, config: ConductorConfig, registry: RoleRegistry) -> None:
        self.config = config
        self.registry = registry
        self.classifier = SeverityClassifier(VISUAL_BLOCKING)

    def ready(self, ctx: IterationContext) -> bool:
        if ctx.halted:
            return False
        return not any(gate.halts_progress for gate in ctx.gates.values())

    async def _invoke(
        self, ctx: IterationContext, role: str, stage: str, instruction: str
    ) -> Artifact:
        return await self.registry.bind(role).run(
            RoleRequest(
                stage=stage,
                task=ctx.task,
                inputs=list(ctx.artifacts),
                instruction=instruction,
            )
        )

    async def run(self, ctx: IterationContext) -> bool:
        if not self.ready(ctx):
            logger.info("[%s] finisher skipped", ctx.iteration_id)
            return False
        roles = self.config.finisher

        if self.registry.has(roles.visual_role):
            try:
                visual = await self._invoke(
                    ctx, roles.visual_role, "visual-check", "Check the result visually."
                )
            except RoleExecutionFailure as exc:
                ctx.record_failure("RoleExecutionFailure", "finisher:visual", str(exc))
                ctx.halt(f"visual check failed: {exc}")
                return False
            ctx.add_artifact(visual)
            blocking, advisory = self.classifier.split(parse_findings(visual))
            for finding in advisory:
                ctx.file_follow_up(finding, scope="visual")
            if blocking:
                ctx.halt(f"visual check found {len(blocking)} blocking issue(s)")
                return False

        if not self.registry.has(roles.commit_role):
            ctx.halt(f"no executor bound for '{roles.commit_role}'")
            return False
        try:
            commit = await self._invoke(
                ctx, roles.commit_role, "commit", "Commit the finished work."
            )
        except RoleExecutionFailure as exc:
            ctx.record_failure("RoleExecutionFailure", "finisher:commit", str(exc))
            ctx.halt(f"commit failed: {exc}")
            return False
        ctx.add_artifact(commit)
        ctx.committed = True
        logger.info("[%s] committed", ctx.iteration_id)

        # Nothing past the commit may block the iteration.
        if not self.registry.has(roles.docs_role):
            return True
        try:
            docs = await self._invoke(
                ctx, roles.docs_role, "documentation", "Update the documentation."
            )
        except RoleExecutionFailure as exc:
            ctx.record_failure("RoleExecutionFailure", "finisher:docs", str(exc))
            ctx.file_follow_up(
                Finding(severity="medium", summary=f"documentation update failed: {exc}"),
                scope="docs",
            )
            return True
        ctx.add_artifact(docs)
        for finding in parse_findings(docs):
            ctx.file_follow_up(finding, scope="docs")
        return True
