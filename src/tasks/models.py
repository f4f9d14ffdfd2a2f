"""Task records for asynchronous write operations.

State machine::

    enqueued -> processing -> succeeded | failed
    enqueued -> failed                     (lazy index creation denied)

The API key presented with the request is captured on the task at enqueue
time (``apiKey``) and never serialized.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..auth.models import ApiKey


class TaskStatus(str, Enum):
    ENQUEUED = "enqueued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskKind(str, Enum):
    INDEX_CREATION = "indexCreation"
    INDEX_UPDATE = "indexUpdate"
    INDEX_DELETION = "indexDeletion"
    DOCUMENT_ADDITION = "documentAddition"
    DOCUMENT_PARTIAL = "documentPartial"
    DOCUMENT_DELETION = "documentDeletion"
    CLEAR_ALL = "clearAll"
    SETTINGS_UPDATE = "settingsUpdate"
    DUMP_CREATION = "dumpCreation"


# Kinds that create their target index on first use (settings resets excluded)
LAZY_CREATION_KINDS = frozenset(
    {TaskKind.DOCUMENT_ADDITION, TaskKind.DOCUMENT_PARTIAL, TaskKind.SETTINGS_UPDATE}
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


class Task(BaseModel):
    uid: int = Field(..., description="Monotonic task identifier")
    indexUid: Optional[str] = Field(None, description="Target index, None for dumps")
    status: TaskStatus = Field(TaskStatus.ENQUEUED)
    type: TaskKind
    details: dict[str, Any] = Field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    enqueuedAt: datetime
    startedAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None

    payload: dict[str, Any] = Field(default_factory=dict, exclude=True)
    apiKey: Optional[ApiKey] = Field(None, exclude=True)

    def summary(self) -> dict[str, Any]:
        """Body of the 202 response returned when the task is enqueued."""
        return {
            "uid": self.uid,
            "indexUid": self.indexUid,
            "status": self.status.value,
            "type": self.type.value,
            "enqueuedAt": _iso(self.enqueuedAt),
        }

    def to_view(self) -> dict[str, Any]:
        duration = None
        if self.startedAt and self.finishedAt:
            duration = (self.finishedAt - self.startedAt).total_seconds()
        return {
            "uid": self.uid,
            "indexUid": self.indexUid,
            "status": self.status.value,
            "type": self.type.value,
            "details": self.details,
            "error": self.error,
            "duration": duration,
            "enqueuedAt": _iso(self.enqueuedAt),
            "startedAt": _iso(self.startedAt),
            "finishedAt": _iso(self.finishedAt),
        }
