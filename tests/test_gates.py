import asyncio
from pathlib import Path

import pytest

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.executors import RoleExecutionFailure, RoleExecutor, RoleRequest
from conductor.gates import GateBoundExceeded, GateEvaluator, SeverityClassifier, begin_round
from conductor.models import Artifact, Finding, Gate, parse_findings
from conductor.roles import RoleRegistry
from conductor.store import TaskStore


class FixLoopExecutor(RoleExecutor):
    """Builder fixes always succeed; re-check output comes from a per-reviewer queue."""

    def __init__(self, rechecks: dict[str, list[str]] | None = None) -> None:
        self.rechecks = {role: list(items) for role, items in (rechecks or {}).items()}
        self.calls: list[tuple[str, str]] = []

    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        self.calls.append((role, request.stage))
        if role == "builder":
            return Artifact(name=request.stage, role=role, content="patched")
        queue = self.rechecks.get(role, [])
        content = queue.pop(0) if queue else "all clear"
        return Artifact(name=request.stage, role=role, content=content)


def _context(tmp_path: Path, config: ConductorConfig, reports: dict[str, str]) -> IterationContext:
    store = TaskStore(tmp_path / ".tasks")
    task = store.create("ship settings page", status="ready")
    task = store.transition(task.id, "in_progress")
    ctx = IterationContext(task=task, config=config, store=store)
    ctx.reports = {
        role: Artifact(name=f"team-{role}", role=role, content=content)
        for role, content in reports.items()
    }
    ctx.role_statuses = {role: "done" for role in config.team.roster}
    for role in config.team.roster:
        if role not in ctx.reports:
            ctx.role_statuses[role] = "failed"
    return ctx


CLEAN_TEAM = {
    "builder": "built",
    "tester": "all tests pass",
    "security-auditor": "no issues",
    "ux-reviewer": "looks fine",
}


def test_security_issue_resolved_in_one_round(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    reports = dict(CLEAN_TEAM, **{"security-auditor": "CRITICAL: SQL injection in search"})
    ctx = _context(tmp_path, config, reports)
    executor = FixLoopExecutor({"security-auditor": ["no issues left"]})

    passed = asyncio.run(GateEvaluator(config, RoleRegistry(default=executor)).run(ctx))

    assert passed is True
    security = ctx.gates["security"]
    assert security.status == "pass"
    assert (security.cycles, security.max_cycles) == (1, 2)
    assert ctx.gates["ux"].status == "pass"
    assert executor.calls == [
        ("builder", "security-fix-1"),
        ("security-auditor", "security-recheck-1"),
    ]


def test_build_gate_escalates_and_stops_evaluation(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    reports = dict(CLEAN_TEAM, tester="HIGH: checkout test fails")
    ctx = _context(tmp_path, config, reports)
    executor = FixLoopExecutor({"tester": ["HIGH: still failing"] * 3})

    passed = asyncio.run(GateEvaluator(config, RoleRegistry(default=executor)).run(ctx))

    assert passed is False
    build = ctx.gates["build"]
    assert build.status == "escalated"
    assert build.cycles == 3
    assert ctx.gates["security"].status == "pending"
    assert ctx.gates["ux"].status == "pending"
    assert all(role in {"builder", "tester"} for role, _stage in executor.calls)
    assert ctx.halted_reason.startswith("build gate escalated")
    assert [record.kind for record in ctx.failures] == ["GateEscalation"]


def test_gates_run_in_fixed_order_for_roster(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    config.team.roster = [
        "performance-reviewer",
        "builder",
        "ux-reviewer",
        "quality-reviewer",
        "tester",
    ]
    evaluator = GateEvaluator(config, RoleRegistry())

    assert [gate.kind for gate in evaluator.active_gates(config.team.roster)] == [
        "build",
        "ux",
        "quality",
        "performance",
    ]


def test_non_blocking_findings_become_backlog_tasks(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    reports = dict(
        CLEAN_TEAM,
        **{
            "ux-reviewer": "LOW: button contrast\nINFO: consider dark mode\nLOW: button contrast",
            "security-auditor": "MEDIUM: verbose error page",
        },
    )
    ctx = _context(tmp_path, config, reports)
    executor = FixLoopExecutor()

    assert asyncio.run(GateEvaluator(config, RoleRegistry(default=executor)).run(ctx)) is True

    assert executor.calls == []
    filed = [ctx.store.get(task_id) for task_id in ctx.filed_tasks]
    assert len(filed) == 2
    assert all(task.priority == 3 and task.status == "backlog" for task in filed)
    assert all(task.origin == ctx.task.id for task in filed)
    assert any("verbose error page" in task.description for task in filed)


def test_missing_reviewer_report_fails_gate_but_continues(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    reports = {role: text for role, text in CLEAN_TEAM.items() if role != "security-auditor"}
    ctx = _context(tmp_path, config, reports)

    passed = asyncio.run(GateEvaluator(config, RoleRegistry(default=FixLoopExecutor())).run(ctx))

    assert passed is False
    assert ctx.gates["security"].status == "fail"
    assert ctx.gates["ux"].status == "pass"
    assert "security-auditor" in ctx.gates["security"].reason


def test_builder_failure_uses_up_a_round(tmp_path: Path) -> None:
    class FlakyBuilder(FixLoopExecutor):
        async def invoke(self, role: str, request: RoleRequest) -> Artifact:
            if role == "builder" and request.stage.endswith("-1"):
                self.calls.append((role, request.stage))
                raise RoleExecutionFailure("builder crashed", role=role)
            return await super().invoke(role, request)

    config = ConductorConfig.default()
    config.team.roster = ["builder", "security-auditor"]
    reports = {"builder": "built", "security-auditor": "HIGH: secret in repo"}
    ctx = _context(tmp_path, config, reports)
    executor = FlakyBuilder()

    assert asyncio.run(GateEvaluator(config, RoleRegistry(default=executor)).run(ctx)) is True
    assert ctx.gates["security"].cycles == 2
    assert [record.scope for record in ctx.failures] == ["security-fix-1"]


def test_begin_round_refuses_to_exceed_bound() -> None:
    gate = Gate(kind="security", max_cycles=1)

    assert begin_round(gate) == 1
    with pytest.raises(GateBoundExceeded):
        begin_round(gate)
    assert gate.cycles == 1


def test_findings_parsing_and_classification() -> None:
    structured = Artifact(
        name="r",
        role="tester",
        data={"findings": [{"severity": "blocker", "summary": "crash"}, {"severity": "odd"}]},
    )
    labelled = Artifact(
        name="r", role="tester", content="- MAJOR: leak\nnothing here\n* minor: typo"
    )

    assert parse_findings(structured) == [Finding("critical", "crash", "tester")]
    assert [item.severity for item in parse_findings(labelled)] == ["high"]

    classifier = SeverityClassifier(["critical", "high", "medium"])
    blocking, advisory = classifier.split(
        [Finding("medium", "a"), Finding("low", "b"), Finding("critical", "c")]
    )
    assert [item.summary for item in blocking] == ["a", "c"]
    assert [item.summary for item in advisory] == ["b"]
    advisory_only = SeverityClassifier(["critical"], gate_blocking=False)
    assert advisory_only.split([Finding("critical", "x")]) == ([], [Finding("critical", "x")])
