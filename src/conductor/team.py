from __future__ import annotations

import asyncio
import logging

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.executors.base import RoleExecutionFailure, RoleRequest
from conductor.channel import MessageChannel
from conductor.models import Artifact, RoleInstance, utcnow_iso
from conductor.roles import RoleAgent, RoleRegistry
from conductor.store import LoopStateFile

logger = logging.getLogger(__name__)


class JoinTimeout(RuntimeError):
    """The iteration deadline passed before every team member finished."""


class Team:
    """Live roster for one iteration."""

    def __init__(
        self, task_id: str, roster: list[str], channel: MessageChannel | None = None
    ) -> None:
        self.task_id = task_id
        self.channel = channel
        self.instances: dict[str, RoleInstance] = {role: RoleInstance(role) for role in roster}
        self.tasks: dict[str, asyncio.Task[None]] = {}
        self.joined = False
        self.live = True

    def statuses(self) -> dict[str, str]:
        return {role: instance.status for role, instance in self.instances.items()}

    def reports(self) -> dict[str, Artifact]:
        return {
            role: instance.report
            for role, instance in self.instances.items()
            if instance.status == "done" and instance.report is not None
        }

    def release(self) -> None:
        """End the team at the join. Stragglers keep running until teardown."""
        if not self.live:
            return
        self.live = False
        self.joined = True
        if self.channel is not None:
            self.channel.close()
        logger.info("Team for %s released", self.task_id)

    async def teardown(self) -> None:
        """Release the team and cancel stragglers. Safe to call twice."""
        self.release()
        pending = [task for task in self.tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.tasks.clear()
        if pending:
            logger.info("Team for %s torn down (%s cancelled)", self.task_id, len(pending))


class TeamCoordinator:
    """Spawns the roster concurrently and waits on the join barrier."""

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
        self._live: dict[str, Team] = {}

    async def _mirror(self, role: str, status: str) -> None:
        # The state file lock may block, so writes stay off the event loop.
        if self.loop_state is not None:
            await asyncio.to_thread(self.loop_state.upsert_agent, role, status)

    def _shared_inputs(self, ctx: IterationContext) -> list[Artifact]:
        inputs: list[Artifact] = []
        for name, _role in self.config.workflow.stage_pairs():
            artifact = ctx.artifact(name)
            if artifact is not None:
                inputs.append(artifact)
        return inputs

    async def _run_member(
        self,
        ctx: IterationContext,
        team: Team,
        agent: RoleAgent,
        request: RoleRequest,
    ) -> None:
        instance = team.instances[agent.role]
        instance.status = "working"
        instance.started_at = utcnow_iso()
        await self._mirror(agent.role, "working")
        try:
            report = await agent.run(request)
        except Exception as exc:
            if team.joined:
                logger.info("Ignoring late failure from %s after join", agent.role)
                return
            if not isinstance(exc, RoleExecutionFailure):
                logger.exception("Team member %s raised unexpectedly", agent.role)
            instance.status = "failed"
            instance.failure = str(exc) or type(exc).__name__
            ctx.record_failure(
                "RoleExecutionFailure", f"team:{agent.role}", instance.failure
            )
        else:
            if team.joined:
                logger.info("Ignoring late report from %s after join", agent.role)
                return
            instance.status = "done"
            instance.report = report
        instance.finished_at = utcnow_iso()
        await self._mirror(agent.role, instance.status)

    def _release(self, task_id: str) -> None:
        team = self._live.get(task_id)
        if team is not None and not team.live:
            del self._live[task_id]

    async def run(self, ctx: IterationContext) -> dict[str, Artifact]:
        task_id = ctx.task.id
        self._release(task_id)
        if task_id in self._live:
            raise RuntimeError(f"Task {task_id} already has a live team.")

        roster = list(dict.fromkeys(self.config.team.roster))
        team = Team(task_id, roster, ctx.channel)
        self._live[task_id] = team
        ctx.team = team
        inputs = self._shared_inputs(ctx)

        # Every inbox exists before any member starts, so early sends are deliverable.
        ports = {role: ctx.channel.open(role) for role in roster}
        for role in roster:
            if not self.registry.has(role):
                instance = team.instances[role]
                instance.status = "failed"
                instance.failure = f"no executor bound for '{role}'"
                ctx.record_failure("RoleExecutionFailure", f"team:{role}", instance.failure)
                await self._mirror(role, "failed")
                continue
            agent = self.registry.bind(role)
            request = RoleRequest(
                stage=f"team-{role}",
                task=ctx.task,
                inputs=list(inputs),
                instruction=f"Work on the approved plan as {role} and report your results.",
                context={"roster": roster},
                port=ports[role],
            )
            team.tasks[role] = asyncio.create_task(
                self._run_member(ctx, team, agent, request), name=f"{task_id}:{role}"
            )

        logger.info("[%s] team spawned: %s", ctx.iteration_id, ", ".join(roster))
        if team.tasks:
            _done, pending = await asyncio.wait(
                list(team.tasks.values()), timeout=ctx.remaining_seconds()
            )
        else:
            pending = set()
        # Stragglers stay attached to the team until the observer tears it down.
        team.release()
        self._live.pop(task_id, None)

        if pending:
            waiting = [role for role, task in team.tasks.items() if task in pending]
            for role in waiting:
                instance = team.instances[role]
                instance.status = "failed"
                instance.failure = "join timeout"
                instance.finished_at = utcnow_iso()
                await self._mirror(role, "failed")
            error = JoinTimeout(
                f"Iteration deadline passed with {len(waiting)} role(s) still working: "
                + ", ".join(waiting)
            )
            ctx.record_failure("JoinTimeout", "team", str(error))

        ctx.role_statuses = team.statuses()
        ctx.reports = team.reports()
        for report in ctx.reports.values():
            ctx.add_artifact(report)
        logger.info(
            "[%s] team joined: %s",
            ctx.iteration_id,
            ", ".join(f"{role}={status}" for role, status in ctx.role_statuses.items()),
        )
        return ctx.reports
