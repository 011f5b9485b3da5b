from conductor.store.loop_state import LoopStateFile
from conductor.store.tasks import (
    InvalidTransition,
    TaskNotFound,
    TaskStore,
    TaskStoreError,
)

__all__ = [
    "InvalidTransition",
    "LoopStateFile",
    "TaskNotFound",
    "TaskStore",
    "TaskStoreError",
]
