from __future__ import annotations

import logging
from collections.abc import Iterable

from conductor.config import ConductorConfig, GateConfig
from conductor.context import IterationContext
from conductor.executors.base import RoleExecutionFailure, RoleRequest
from conductor.models import GATE_ORDER, Artifact, Finding, Gate, parse_findings
from conductor.roles import RoleRegistry

logger = logging.getLogger(__name__)


class GateEscalation(RuntimeError):
    """A bounded retry protocol used up its rounds without a pass."""

    def __init__(self, kind: str, cycles: int, reason: str) -> None:
        super().__init__(f"{kind} gate escalated after {cycles} round(s): {reason}")
        self.kind = kind
        self.cycles = cycles
        self.reason = reason


class GateBoundExceeded(RuntimeError):
    """Raised when a round is started on a gate that is already at its bound."""


def begin_round(gate: Gate) -> int:
    if gate.exhausted:
        raise GateBoundExceeded(
            f"{gate.kind} gate is at {gate.cycles}/{gate.max_cycles}; escalate instead."
        )
    gate.cycles += 1
    return gate.cycles


def escalate(gate: Gate, reason: str) -> GateEscalation:
    gate.status = "escalated"
    gate.reason = reason
    return GateEscalation(gate.kind, gate.cycles, reason)


class SeverityClassifier:
    def __init__(self, blocking_severities: Iterable[str], *, gate_blocking: bool = True) -> None:
        self.blocking_severities = frozenset(blocking_severities)
        self.gate_blocking = gate_blocking

    def is_blocking(self, finding: Finding) -> bool:
        return self.gate_blocking and finding.severity in self.blocking_severities

    def split(self, findings: list[Finding]) -> tuple[list[Finding], list[Finding]]:
        blocking = [item for item in findings if self.is_blocking(item)]
        advisory = [item for item in findings if not self.is_blocking(item)]
        return blocking, advisory

    @classmethod
    def for_gate(cls, gate_config: GateConfig) -> SeverityClassifier:
        return cls(gate_config.blocking_severities, gate_blocking=gate_config.blocking)


def _findings_text(findings: list[Finding]) -> str:
    return "\n".join(f"- {item.severity.upper()}: {item.summary}" for item in findings)


class GateEvaluator:
    """Runs post-join gates in fixed priority order.

    Build correctness comes first so later gates never look at a build that is
    still broken. The first escalated gate stops evaluation.
    """

    def __init__(self, config: ConductorConfig, registry: RoleRegistry) -> None:
        self.config = config
        self.registry = registry

    def active_gates(self, roster: Iterable[str]) -> list[GateConfig]:
        members = set(roster)
        return [
            self.config.gates[kind]
            for kind in GATE_ORDER
            if kind in self.config.gates and self.config.gates[kind].reviewer in members
        ]

    async def run(self, ctx: IterationContext) -> bool:
        active = self.active_gates(self.config.team.roster)
        for gate_config in active:
            ctx.gates[gate_config.kind] = Gate(
                kind=gate_config.kind,
                max_cycles=int(gate_config.max_cycles),
                blocking=gate_config.blocking,
            )

        for gate_config in active:
            gate = ctx.gates[gate_config.kind]
            try:
                await self._evaluate(ctx, gate, gate_config)
            except GateEscalation as exc:
                ctx.record_failure("GateEscalation", f"gate:{gate.kind}", str(exc))
                ctx.halt(f"{gate.kind} gate escalated: {exc.reason}")
                logger.warning("Stopping gate evaluation at %s", gate.kind)
                break

        return not any(gate.halts_progress for gate in ctx.gates.values())

    async def _invoke(
        self,
        ctx: IterationContext,
        role: str,
        stage: str,
        inputs: list[Artifact],
        instruction: str,
        context: dict[str, object],
    ) -> Artifact | None:
        if not self.registry.has(role):
            ctx.record_failure("RoleExecutionFailure", stage, f"no executor bound for '{role}'")
            return None
        try:
            artifact = await self.registry.bind(role).run(
                RoleRequest(
                    stage=stage,
                    task=ctx.task,
                    inputs=inputs,
                    instruction=instruction,
                    context=dict(context),
                )
            )
        except RoleExecutionFailure as exc:
            ctx.record_failure("RoleExecutionFailure", stage, str(exc))
            return None
        return ctx.add_artifact(artifact)

    async def _evaluate(
        self,
        ctx: IterationContext,
        gate: Gate,
        gate_config: GateConfig,
    ) -> None:
        reviewer = gate_config.reviewer
        report = ctx.reports.get(reviewer)
        if report is None:
            status = ctx.role_statuses.get(reviewer, "missing")
            gate.status = "fail"
            gate.reason = f"no report from {reviewer} ({status})"
            ctx.record_failure("GateFailure", f"gate:{gate.kind}", gate.reason)
            if gate.blocking:
                ctx.halt(f"{gate.kind} gate failed: {gate.reason}")
            return

        classifier = SeverityClassifier.for_gate(gate_config)
        findings = parse_findings(report)
        gate.findings = findings
        blocking, advisory = classifier.split(findings)
        for finding in advisory:
            ctx.file_follow_up(finding, scope=gate.kind)

        latest = report
        builder = self.config.team.builder_role
        while blocking:
            if gate.exhausted:
                raise escalate(
                    gate,
                    f"{len(blocking)} blocking finding(s) after {gate.cycles} round(s)",
                )
            cycle = begin_round(gate)
            logger.info(
                "%s gate round %s/%s: %s blocking finding(s)",
                gate.kind,
                cycle,
                gate.max_cycles,
                len(blocking),
            )
            fix = await self._invoke(
                ctx,
                builder,
                f"{gate.kind}-fix-{cycle}",
                [latest],
                f"Fix the blocking {gate.kind} findings:\n{_findings_text(blocking)}",
                {"gate": gate.kind, "cycle": cycle, "findings": [f.to_dict() for f in blocking]},
            )
            if fix is None:
                continue
            recheck = await self._invoke(
                ctx,
                reviewer,
                f"{gate.kind}-recheck-{cycle}",
                [fix],
                f"Re-check the {gate.kind} findings after the fix.",
                {"gate": gate.kind, "cycle": cycle},
            )
            if recheck is None:
                continue
            latest = recheck
            findings = parse_findings(recheck)
            gate.findings = findings
            blocking, advisory = classifier.split(findings)
            for finding in advisory:
                ctx.file_follow_up(finding, scope=gate.kind)

        gate.status = "pass"
        gate.reason = "" if gate.cycles == 0 else f"resolved in {gate.cycles} round(s)"
        logger.info("%s gate passed (%s/%s)", gate.kind, gate.cycles, gate.max_cycles)
