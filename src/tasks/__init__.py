"""Asynchronous task pipeline."""

from .lazy_creation import ensure_index_for_task
from .models import LAZY_CREATION_KINDS, Task, TaskKind, TaskStatus
from .queue import TaskQueue

__all__ = [
    "Task",
    "TaskKind",
    "TaskStatus",
    "TaskQueue",
    "LAZY_CREATION_KINDS",
    "ensure_index_for_task",
]
