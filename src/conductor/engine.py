from __future__ import annotations

import logging

from conductor.config import ConductorConfig
from conductor.context import IterationContext
from conductor.finisher import Finisher
from conductor.gates import GateEvaluator
from conductor.models import IterationReport, Task
from conductor.observer import Observer
from conductor.roles import RoleRegistry
from conductor.stages import StageRunner
from conductor.store import LoopStateFile, TaskStore, TaskStoreError
from conductor.team import TeamCoordinator

logger = logging.getLogger(__name__)


class IterationEngine:
    """Drives one task through solo stages, team build, gates and finishing."""

    def __init__(
        self,
        config: ConductorConfig,
        store: TaskStore,
        registry: RoleRegistry,
        *,
        loop_state: LoopStateFile | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.loop_state = loop_state
        self.stages = StageRunner(config, registry)
        self.team = TeamCoordinator(config, registry, loop_state=loop_state)
        self.gates = GateEvaluator(config, registry)
        self.finisher = Finisher(config, registry)
        self.observer = Observer(config, registry, loop_state=loop_state)

    def claim(self, task_id: str | None = None) -> Task | None:
        if task_id is None:
            task = self.store.fetch_next()
            if task is None:
                return None
        else:
            task = self.store.get(task_id)

        if task.status == "backlog":
            task = self.store.transition(task.id, "ready")
        if task.status == "ready":
            task = self.store.transition(task.id, "in_progress")
        elif task.status != "in_progress":
            raise TaskStoreError(f"Task {task.id} is {task.status}; nothing to run.")
        return task

    async def run(self, task_id: str | None = None) -> IterationReport | None:
        task = self.claim(task_id)
        if task is None:
            logger.info("No runnable task")
            return None

        ctx = IterationContext(task=task, config=self.config, store=self.store)
        logger.info("[%s] starting on %s: %s", ctx.iteration_id, task.id, task.description)
        if self.loop_state is not None:
            self.loop_state.start(ctx.iteration_id)
        try:
            await self._pipeline(ctx)
        except Exception as exc:
            ctx.record_failure(type(exc).__name__, "engine", str(exc) or repr(exc))
            ctx.halt(f"unexpected error: {exc!r}")
            raise
        finally:
            await self.observer.close(ctx)
        return ctx.report

    async def _pipeline(self, ctx: IterationContext) -> None:
        if not await self.stages.run(ctx):
            return
        await self.team.run(ctx)
        if not await self.gates.run(ctx):
            return
        await self.finisher.run(ctx)
