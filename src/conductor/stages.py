from __future__ import annotations

import logging
import re

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.executors.base import RoleExecutionFailure, RoleRequest
from conductor.gates import begin_round, escalate
from conductor.models import Artifact
from conductor.roles import RoleAgent, RoleRegistry

logger = logging.getLogger(__name__)

VERDICT_PATTERN = re.compile(r"\b(APPROVED|REJECTED)\b")
DECISION_PATTERN = re.compile(r"\b(ACCEPT|REJECT)(?:ED)?\b")
NEGATED_APPROVAL = re.compile(
    r"\b(?:NOT|NEVER|CANNOT|CAN'T|WON'T|DON'T)\s+(?:\w+\s+)?"
    r"(?:APPROVED?|ACCEPT(?:ED)?)\b"
)
APPROVING_WORDS = {"approve", "approved", "accept", "accepted", "pass", "lgtm"}
REJECTING_WORDS = {"reject", "rejected", "fail", "changes_requested"}
PLAN_REJECTED = "plan rejected after max rounds"


def parse_verdict(review: Artifact) -> bool:
    """True when the critic approved. Silence is not approval."""
    approved = review.data.get("approved")
    if isinstance(approved, bool):
        return approved
    verdict = str(review.data.get("verdict", "")).strip().lower()
    if verdict in APPROVING_WORDS:
        return True
    if verdict in REJECTING_WORDS:
        return False
    text = review.content.upper()
    if NEGATED_APPROVAL.search(text):
        return False
    tokens = VERDICT_PATTERN.findall(text)
    return bool(tokens) and "REJECTED" not in tokens


def parse_decision(artifact: Artifact) -> str:
    decision = str(artifact.data.get("decision", "")).strip().lower()
    if decision in {"accept", "accepted"}:
        return "accept"
    if decision in {"reject", "rejected"}:
        return "reject"
    text = artifact.content.upper()
    if NEGATED_APPROVAL.search(text):
        return "reject"
    tokens = DECISION_PATTERN.findall(text)
    if tokens and all(token == "ACCEPT" for token in tokens):
        return "accept"
    return "reject"


class ApprovalGate:
    """Critic review of the plan with bounded revise/resubmit rounds.

    At the bound the gate escalates and the lead role makes one binary call.
    That call is the only way past a rejected bound.
    """

    def __init__(self, config: ConductorConfig, registry: RoleRegistry) -> None:
        self.config = config
        self.registry = registry

    async def run(self, ctx: IterationContext, plan: Artifact, producer: RoleAgent) -> bool:
        gate = ctx.approval
        critic_role = self.config.approval.critic_role
        if not self.registry.has(critic_role):
            logger.warning("No executor bound for %s; plan approved without review", critic_role)
            gate.status = "pass"
            gate.reason = f"no {critic_role} bound"
            return True

        critic = self.registry.bind(critic_role)
        current = plan
        while True:
            cycle = begin_round(gate)
            critique = ""
            try:
                review = await critic.run(
                    RoleRequest(
                        stage=f"{plan.name}-review-{cycle}",
                        task=ctx.task,
                        inputs=[current],
                        instruction="Review the plan. Answer APPROVED or REJECTED with reasons.",
                        context={"round": cycle, "max_rounds": gate.max_cycles},
                    )
                )
                ctx.add_artifact(review)
                approved = parse_verdict(review)
                critique = review.content
            except RoleExecutionFailure as exc:
                ctx.record_failure("RoleExecutionFailure", f"approval:{cycle}", str(exc))
                approved = False
                review = None
                critique = str(exc)

            ctx.approval_history.append({"round": cycle, "approved": approved})
            logger.info("Plan review round %s/%s: %s", cycle, gate.max_cycles,
                        "approved" if approved else "rejected")
            if approved:
                gate.status = "pass"
                gate.reason = f"approved in round {cycle}"
                return True
            if gate.exhausted:
                break

            inputs = [current] if review is None else [current, review]
            try:
                current = await producer.run(
                    RoleRequest(
                        stage=plan.name,
                        task=ctx.task,
                        inputs=inputs,
                        instruction=f"Revise the plan to address the critique:\n{critique[:4000]}",
                        context={"round": cycle, "revision": True},
                    )
                )
            except RoleExecutionFailure as exc:
                ctx.record_failure("RoleExecutionFailure", f"stage:{plan.name}", str(exc))
                gate.status = "fail"
                gate.reason = f"plan revision failed: {exc}"
                ctx.halt(f"stage {plan.name} failed: {exc}")
                return False
            ctx.add_artifact(current)

        error = escalate(gate, PLAN_REJECTED)
        ctx.record_failure("GateEscalation", "approval", str(error))
        decision = await self._lead_decision(ctx, current)
        ctx.lead_decision = decision
        if decision == "accept":
            logger.warning("Lead accepted the plan after %s rejected rounds", gate.cycles)
            return True
        ctx.halt(PLAN_REJECTED)
        return False

    async def _lead_decision(self, ctx: IterationContext, plan: Artifact) -> str:
        lead_role = self.config.approval.lead_role
        if not self.registry.has(lead_role):
            logger.warning("No executor bound for %s; escalated plan stays rejected", lead_role)
            return "reject"
        reviews = [item for item in ctx.artifacts if item.name.startswith(f"{plan.name}-review-")]
        try:
            decision = await self.registry.bind(lead_role).run(
                RoleRequest(
                    stage="lead-decision",
                    task=ctx.task,
                    inputs=[plan, *reviews],
                    instruction="The plan was rejected at every round. Answer ACCEPT or REJECT.",
                    context={"rounds": ctx.approval_history},
                )
            )
        except RoleExecutionFailure as exc:
            ctx.record_failure("RoleExecutionFailure", "lead-decision", str(exc))
            return "reject"
        ctx.add_artifact(decision)
        return parse_decision(decision)


class StageRunner:
    """Runs the solo stages in order, one at a time."""

    def __init__(self, config: ConductorConfig, registry: RoleRegistry) -> None:
        self.config = config
        self.registry = registry
        self.approval = ApprovalGate(config, registry)

    async def run(self, ctx: IterationContext) -> bool:
        for name, role in self.config.workflow.stage_pairs():
            if not self.registry.has(role):
                reason = f"no executor bound for '{role}'"
                ctx.record_failure("RoleExecutionFailure", f"stage:{name}", reason)
                ctx.halt(f"stage {name} failed: {reason}")
                return False
            agent = self.registry.bind(role)
            logger.info("[%s] stage %s (%s)", ctx.iteration_id, name, role)
            try:
                artifact = await agent.run(
                    RoleRequest(
                        stage=name,
                        task=ctx.task,
                        inputs=list(ctx.artifacts),
                        instruction=f"Produce the {name} artifact for: {ctx.task.description}",
                    )
                )
            except RoleExecutionFailure as exc:
                ctx.record_failure("RoleExecutionFailure", f"stage:{name}", str(exc))
                ctx.halt(f"stage {name} failed: {exc}")
                return False
            ctx.add_artifact(artifact)

            if name == self.config.approval.stage:
                approved = await self.approval.run(ctx, artifact, agent)
                if not approved:
                    return False
        return True
