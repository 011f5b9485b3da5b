from conductor.executors.base import (
    RoleExecutionFailure,
    RoleExecutor,
    RoleRequest,
    RoleTimeoutError,
)
from conductor.executors.command import CommandExecutor
from conductor.executors.guarded import GuardedExecutor

__all__ = [
    "CommandExecutor",
    "GuardedExecutor",
    "RoleExecutionFailure",
    "RoleExecutor",
    "RoleRequest",
    "RoleTimeoutError",
]
