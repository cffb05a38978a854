from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from harbormaster.core.errors import ProjectBusyError
from harbormaster.utils.logger import logger


class ProjectLocks:
    """
    Per-project mutual exclusion for mutating operations.

    Each project is either idle (absent from ``_busy``) or busy with exactly one
    named operation. Contention is rejected with ``ProjectBusyError`` instead of
    queueing; different projects never block each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._busy: Dict[str, str] = {}

    def state(self, project: str) -> Optional[str]:
        """Operation holding ``project``, or None when idle."""
        with self._guard:
            return self._busy.get(project)

    def try_acquire(self, project: str, operation: str) -> None:
        with self._guard:
            current = self._busy.get(project)
            if current is not None:
                logger.warning(f"Rejecting {operation} on '{project}': {current} in progress")
                raise ProjectBusyError(project, current)
            self._busy[project] = operation

    def release(self, project: str) -> None:
        with self._guard:
            self._busy.pop(project, None)

    @contextmanager
    def hold(self, project: str, operation: str) -> Iterator[None]:
        self.try_acquire(project, operation)
        try:
            yield
        finally:
            self.release(project)
