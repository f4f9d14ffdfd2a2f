"""FIFO task queue and worker for asynchronous write operations.

Write requests are turned into tasks and answered with 202 immediately. A
single worker processes tasks in enqueue order, so at most one task touches
an index at any time.

Processing Flow:
    1. Lazy-creation gate (src.tasks.lazy_creation) for document additions
       and settings updates on a missing index. A denial moves the task
       straight from ``enqueued`` to ``failed`` with ``index_not_found``.
    2. ``processing``: the operation is applied to the index registry.
    3. ``succeeded``, or ``failed`` with the error payload of the
       ``ResponseError`` raised by the operation.

Dependencies:
    - threading: For the queue state lock and the single-processor lock
    - asyncio: For the background worker loop run in the app lifespan
    - structlog: For task transition logging

Used by:
    - src.service.main: enqueue on write routes, task listing routes
    - src.container: registered as the ``task_queue`` singleton
"""

import asyncio
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

import structlog

from ..auth.models import ApiKey, utc_now
from ..errors import ERROR_DOCS_URL, ResponseError, TaskNotFoundError
from ..indexes.dumps import DumpRegistry
from ..indexes.registry import IndexRegistry
from .lazy_creation import ensure_index_for_task
from .models import Task, TaskKind, TaskStatus

logger = structlog.get_logger()


class TaskQueue:
    def __init__(
        self,
        indexes: IndexRegistry,
        dumps: DumpRegistry,
        clock: Callable[[], datetime] = utc_now,
        error_docs_url: str = ERROR_DOCS_URL,
    ):
        self._indexes = indexes
        self._dumps = dumps
        self._clock = clock
        self._error_docs_url = error_docs_url
        self._lock = threading.Lock()
        self._processing = threading.Lock()
        self._tasks: dict[int, Task] = {}
        self._pending: deque[int] = deque()
        self._next_uid = 0
        self._stopped = False

    def enqueue(
        self,
        kind: TaskKind,
        index_uid: Optional[str],
        api_key: ApiKey,
        payload: Optional[dict[str, Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Task:
        with self._lock:
            task = Task(
                uid=self._next_uid,
                indexUid=index_uid,
                type=kind,
                details=details or {},
                enqueuedAt=self._clock(),
                payload=payload or {},
                apiKey=api_key,
            )
            self._tasks[task.uid] = task
            self._pending.append(task.uid)
            self._next_uid += 1

        logger.info("Task enqueued", task_uid=task.uid, kind=kind.value, index_uid=index_uid)
        return task

    def get(self, uid: int) -> Task:
        task = self._tasks.get(uid)
        if task is None:
            raise TaskNotFoundError(uid)
        return task

    def list_tasks(self, index_uid: Optional[str] = None) -> list[Task]:
        """Tasks newest first, optionally restricted to one index."""
        with self._lock:
            tasks = list(self._tasks.values())
        tasks.reverse()
        if index_uid is not None:
            tasks = [t for t in tasks if t.indexUid == index_uid]
        return tasks

    def is_indexing(self, index_uid: str) -> bool:
        return any(
            t.indexUid == index_uid and t.status == TaskStatus.PROCESSING
            for t in list(self._tasks.values())
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def process_next(self) -> Optional[Task]:
        """Process the oldest enqueued task. Returns None when the queue is empty."""
        with self._processing:
            with self._lock:
                if not self._pending:
                    return None
                task = self._tasks[self._pending.popleft()]

            try:
                ensure_index_for_task(task, self._indexes, self._clock())
            except ResponseError as e:
                self._fail(task, e)
                return task

            task.status = TaskStatus.PROCESSING
            task.startedAt = self._clock()
            logger.info("Task processing", task_uid=task.uid, kind=task.type.value, index_uid=task.indexUid)

            try:
                task.details.update(self._execute(task) or {})
            except ResponseError as e:
                self._fail(task, e)
                return task
            except Exception as e:
                logger.exception("Task crashed", task_uid=task.uid, error=str(e))
                task.status = TaskStatus.FAILED
                task.error = {"message": str(e), "code": "internal", "type": "internal", "link": None}
                task.finishedAt = self._clock()
                return task

            task.status = TaskStatus.SUCCEEDED
            task.finishedAt = self._clock()
            logger.info("Task succeeded", task_uid=task.uid, kind=task.type.value, index_uid=task.indexUid)
            return task

    def process_pending(self) -> int:
        """Drain the queue synchronously; returns the number of tasks processed."""
        processed = 0
        while self.process_next() is not None:
            processed += 1
        return processed

    async def run_worker(self, poll_interval: float = 0.05) -> None:
        """Background loop started by the application lifespan."""
        logger.info("Task worker started")
        while not self._stopped:
            if self.process_next() is None:
                await asyncio.sleep(poll_interval)
            else:
                await asyncio.sleep(0)
        logger.info("Task worker stopped")

    async def close(self) -> None:
        self._stopped = True

    def _fail(self, task: Task, error: ResponseError) -> None:
        task.status = TaskStatus.FAILED
        task.error = error.to_payload(self._error_docs_url)
        task.finishedAt = self._clock()
        if task.type == TaskKind.DUMP_CREATION:
            self._dumps.finish(task.details["dumpUid"], failed=True)
        logger.info(
            "Task failed",
            task_uid=task.uid,
            kind=task.type.value,
            index_uid=task.indexUid,
            code=error.code,
        )

    def _execute(self, task: Task) -> Optional[dict[str, Any]]:
        kind = task.type
        uid = task.indexUid
        payload = task.payload

        if kind == TaskKind.INDEX_CREATION:
            index = self._indexes.create(uid, primary_key=payload.get("primaryKey"))
            return {"primaryKey": index.primaryKey}
        if kind == TaskKind.INDEX_UPDATE:
            index = self._indexes.update(uid, payload.get("primaryKey"))
            return {"primaryKey": index.primaryKey}
        if kind == TaskKind.INDEX_DELETION:
            deleted = self._indexes.get(uid).stats()["numberOfDocuments"]
            self._indexes.delete(uid)
            return {"deletedDocuments": deleted}
        if kind in (TaskKind.DOCUMENT_ADDITION, TaskKind.DOCUMENT_PARTIAL):
            indexed = self._indexes.add_documents(
                uid,
                payload.get("documents", []),
                primary_key=payload.get("primaryKey"),
                merge=kind == TaskKind.DOCUMENT_PARTIAL,
            )
            return {"indexedDocuments": indexed}
        if kind == TaskKind.DOCUMENT_DELETION:
            return {"deletedDocuments": self._indexes.delete_documents(uid, payload["documentIds"])}
        if kind == TaskKind.CLEAR_ALL:
            return {"deletedDocuments": self._indexes.delete_documents(uid)}
        if kind == TaskKind.SETTINGS_UPDATE:
            if payload.get("reset"):
                self._indexes.reset_settings(uid)
            else:
                self._indexes.update_settings(uid, payload.get("settings", {}))
            return None
        if kind == TaskKind.DUMP_CREATION:
            self._dumps.finish(task.details["dumpUid"])
            return None
        raise ValueError(f"Unsupported task kind {kind}")
