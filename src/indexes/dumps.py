"""Dump bookkeeping.

A dump is requested through ``POST /dumps`` and produced by the task worker.
Only its status is tracked here; writing the dump file belongs to the
external engine.
"""

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from ..auth.models import utc_now
from ..errors import DumpNotFoundError


class DumpRegistry:
    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._dumps: dict[str, dict[str, Any]] = {}
        self._counter = 0

    def create(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._counter += 1
            uid = f"{now:%Y%m%d-%H%M%S}{self._counter:03d}"
            dump = {"uid": uid, "status": "in_progress", "startedAt": now, "finishedAt": None}
            self._dumps[uid] = dump
            return self._view(dump)

    def finish(self, uid: str, failed: bool = False) -> None:
        with self._lock:
            dump = self._dumps.get(uid)
            if dump is None:
                raise DumpNotFoundError(uid)
            dump["status"] = "failed" if failed else "done"
            dump["finishedAt"] = self._clock()

    def status(self, uid: str) -> dict[str, Any]:
        with self._lock:
            dump = self._dumps.get(uid)
            if dump is None:
                raise DumpNotFoundError(uid)
            return self._view(dump)

    @staticmethod
    def _view(dump: dict[str, Any]) -> dict[str, Any]:
        finished: Optional[datetime] = dump["finishedAt"]
        return {
            "uid": dump["uid"],
            "status": dump["status"],
            "startedAt": dump["startedAt"].isoformat().replace("+00:00", "Z"),
            "finishedAt": finished.isoformat().replace("+00:00", "Z") if finished else None,
        }
