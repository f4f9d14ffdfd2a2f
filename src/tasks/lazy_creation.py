"""Lazy index creation hook.

Adding documents or updating settings on an index that does not exist yet is
accepted synchronously and enqueued. When the task is processed, the missing
index is created implicitly, but only if the key captured with the request is
allowed ``indexes.create`` on that uid *at processing time*.

A denial fails the task with ``index_not_found``: the same error a missing
index produces for a key that may create it, so the two cases cannot be told
apart by the caller.

The decision is the same ``authorize`` call used on the request path; no
authorization logic lives here.
"""

from datetime import datetime

import structlog

from ..auth.actions import Action
from ..auth.authorization import AuthorizationOutcome, authorize
from ..errors import IndexNotFoundError
from ..indexes.registry import IndexRegistry
from .models import LAZY_CREATION_KINDS, Task

logger = structlog.get_logger()


def needs_lazy_creation(task: Task, indexes: IndexRegistry) -> bool:
    """Settings resets never create an index; they fail on a missing one."""
    return (
        task.type in LAZY_CREATION_KINDS
        and not task.payload.get("isDeletion")
        and task.indexUid is not None
        and not indexes.exists(task.indexUid)
    )


def authorize_lazy_creation(task: Task, now: datetime) -> AuthorizationOutcome:
    return authorize(task.apiKey, now, Action.INDEXES_CREATE, task.indexUid)


def ensure_index_for_task(task: Task, indexes: IndexRegistry, now: datetime) -> None:
    """Create the task's missing target index, or fail as if it does not exist.

    No-op for tasks whose index exists or whose kind never creates indexes.

    Raises:
        IndexNotFoundError: If the captured key may not create the index
    """
    if not needs_lazy_creation(task, indexes):
        return

    outcome = authorize_lazy_creation(task, now)
    if not outcome:
        logger.warning(
            "Implicit index creation denied",
            task_uid=task.uid,
            index_uid=task.indexUid,
            reason=outcome.reason.value,
            key_uid=task.apiKey.uid if task.apiKey else None,
            extra={"security_event": True},
        )
        raise IndexNotFoundError(task.indexUid)

    indexes.create(task.indexUid, primary_key=task.payload.get("primaryKey"))
    logger.info("Index created implicitly", task_uid=task.uid, index_uid=task.indexUid)
