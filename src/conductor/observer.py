from __future__ import annotations

import logging

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.executors.base import RoleExecutionFailure, RoleRequest
from conductor.models import Artifact, IterationReport, utcnow_iso
from conductor.roles import RoleRegistry
from conductor.store import LoopStateFile, TaskStoreError

logger = logging.getLogger(__name__)


def recommend(ctx: IterationContext) -> str | None:
    """Deterministic tuning hint from the iteration's outcomes."""
    hints: list[str] = []
    approval = ctx.approval
    if approval.status == "escalated" and ctx.lead_decision == "accept":
        hints.append(
            f"lead overrode the plan review; consider raising approval.max_rounds "
            f"above {approval.max_cycles}"
        )
    for gate in ctx.gates.values():
        if gate.status == "escalated":
            hints.append(
                f"{gate.kind} gate escalated; consider raising gates.{gate.kind}.max_cycles "
                f"above {gate.max_cycles} or splitting the task"
            )
    if any(record.kind == "JoinTimeout" for record in ctx.failures):
        hints.append(
            "team missed the deadline; consider raising engine.iteration_timeout_seconds "
            f"above {ctx.config.engine.iteration_timeout_seconds:g}"
        )
    return "; ".join(hints) if hints else None


class Observer:
    """Closes an iteration: report, terminal transition, teardown."""

    def __init__(
        self,
        config: ConductorConfig,
        registry: RoleRegistry,
        *,
        loop_state: LoopStateFile | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.loop_state = loop_state

    async def _recommendation(self, ctx: IterationContext, summary: Artifact) -> str | None:
        role = self.config.finisher.observer_role
        fallback = recommend(ctx)
        if not self.registry.has(role):
            return fallback
        try:
            artifact = await self.registry.bind(role).run(
                RoleRequest(
                    stage="observation",
                    task=ctx.task,
                    inputs=[summary],
                    instruction="Review the iteration outcome and suggest one adjustment.",
                )
            )
        except RoleExecutionFailure as exc:
            ctx.record_failure("RoleExecutionFailure", "observer", str(exc))
            return fallback
        value = artifact.data.get("recommendation")
        return str(value) if value else fallback

    async def close(self, ctx: IterationContext) -> IterationReport:
        if ctx.report is not None:
            return ctx.report
        store = ctx.store
        if store.report_path(ctx.iteration_id).exists():
            if ctx.team is not None:
                await ctx.team.teardown()
            ctx.report = store.read_report(ctx.iteration_id)
            return ctx.report

        if ctx.team is not None:
            await ctx.team.teardown()
        ctx.channel.close()

        success = ctx.committed and not ctx.halted
        final_status = "done" if success else "blocked"
        escalation_reason = None
        if not success:
            escalation_reason = ctx.halted_reason or "iteration ended without a commit"

        approval = ctx.approval
        approval_summary = {
            "status": approval.status,
            "rounds": approval.cycles,
            "max_rounds": approval.max_cycles,
            "history": list(ctx.approval_history),
            "lead_decision": ctx.lead_decision,
            "lead_override": approval.status == "escalated" and ctx.lead_decision == "accept",
        }
        summary = Artifact(
            name="iteration-summary",
            role="observer",
            data={
                "final_status": final_status,
                "gates": {kind: gate.to_dict() for kind, gate in ctx.gates.items()},
                "approval": approval_summary,
                "failures": [record.to_dict() for record in ctx.failures],
            },
        )
        recommendation = await self._recommendation(ctx, summary)

        if escalation_reason is not None:
            try:
                ctx.add_artifact(
                    Artifact(
                        name="escalation",
                        role="observer",
                        content=escalation_reason,
                        data={"iteration_id": ctx.iteration_id, "reason": escalation_reason},
                    )
                )
            except TaskStoreError as exc:
                ctx.record_failure("TaskStoreError", "observer", str(exc))
        try:
            ctx.task = store.transition(ctx.task.id, final_status, reason=escalation_reason)
        except TaskStoreError as exc:
            ctx.record_failure("TaskStoreError", "observer", str(exc))

        report = IterationReport(
            iteration_id=ctx.iteration_id,
            task_id=ctx.task.id,
            final_status=final_status,
            started_at=ctx.started_at,
            ended_at=utcnow_iso(),
            gates={kind: gate.to_dict() for kind, gate in ctx.gates.items()},
            approval=approval_summary,
            roles=dict(ctx.role_statuses),
            message_digest=ctx.channel.digest(),
            failures=[record.to_dict() for record in ctx.failures],
            filed_tasks=list(ctx.filed_tasks),
            committed=ctx.committed,
            escalation_reason=escalation_reason,
            recommendation=recommendation,
        )
        store.write_report(report, ctx.channel.entries())
        ctx.report = report
        if self.loop_state is not None:
            self.loop_state.record_event(
                {
                    "event": "iteration_closed",
                    "iteration_id": ctx.iteration_id,
                    "task_id": ctx.task.id,
                    "final_status": final_status,
                }
            )
        logger.info("[%s] closed task %s as %s", ctx.iteration_id, ctx.task.id, final_status)
        return report
