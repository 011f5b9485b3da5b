from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from conductor.executors.base import (
    RoleExecutionFailure,
    RoleExecutor,
    RoleRequest,
    RoleTimeoutError,
)
from conductor.models import Artifact

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]


class GuardedExecutor(RoleExecutor):
    """Wraps an executor with a per-call timeout and event reporting.

    Calls are never retried: a role invocation is not assumed to be idempotent.
    """

    def __init__(
        self,
        inner: RoleExecutor,
        *,
        timeout_seconds: float | None = None,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _emit_failure(self, role: str, request: RoleRequest, error: Exception) -> None:
        self._emit(
            {
                "event": "role_invoke_failed",
                "role": role,
                "stage": request.stage,
                "error": str(error),
            }
        )

    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        self._emit({"event": "role_invoke_start", "role": role, "stage": request.stage})
        try:
            if self.timeout_seconds:
                artifact = await asyncio.wait_for(
                    self.inner.invoke(role, request),
                    timeout=self.timeout_seconds,
                )
            else:
                artifact = await self.inner.invoke(role, request)
        except TimeoutError as exc:
            error = RoleTimeoutError(
                f"Role '{role}' timed out after {self.timeout_seconds:.1f}s",
                role=role,
            )
            self._emit_failure(role, request, error)
            raise error from exc
        except RoleExecutionFailure as exc:
            self._emit_failure(role, request, exc)
            raise
        except Exception as exc:
            logger.exception("Executor for role %s raised unexpectedly", role)
            self._emit_failure(role, request, exc)
            raise RoleExecutionFailure(f"Role '{role}' failed: {exc}", role=role) from exc

        self._emit({"event": "role_invoke_done", "role": role, "stage": request.stage})
        return artifact
