"""
External collaborators - task persistence and session verification

The agent core only consumes these interfaces. The in-memory
implementations back the default service and the tests.
"""

import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from taskboard_agent.models.task import Task, now_iso
from taskboard_agent.utils.exceptions import NotFoundError, UnauthorizedError
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


class TaskRepository(Protocol):
    """
    Persisted task mutation interface.

    Every method may raise NotFoundError, UnauthorizedError or StorageError.
    """

    def create(self, task: Task) -> Task:
        ...

    def update(self, task_id: str, patch: Dict[str, Any]) -> Task:
        ...

    def query(self, date_range: Tuple[str, str]) -> List[Task]:
        ...

    def delete(self, task_id: str) -> None:
        ...


class InMemoryTaskRepository:
    """Dictionary-backed repository."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()

    def create(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = task.copy()
            return task.copy()

    def update(self, task_id: str, patch: Dict[str, Any]) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError("Task", task_id)
            merged = {**current.to_dict(), **patch, "updatedAt": now_iso()}
            self._tasks[task_id] = Task.from_dict(merged)
            return self._tasks[task_id].copy()

    def query(self, date_range: Tuple[str, str]) -> List[Task]:
        start, end = date_range
        with self._lock:
            return [
                t.copy() for t in self._tasks.values()
                if t.calendar_item and start <= t.calendar_item.start[:10] <= end
            ]

    def delete(self, task_id: str) -> None:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                raise NotFoundError("Task", task_id)

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.copy() if task else None

    def all(self) -> List[Task]:
        with self._lock:
            return [t.copy() for t in self._tasks.values()]


class SessionVerifier(Protocol):
    """verify session -> user id"""

    def verify(self, token: Optional[str]) -> str:
        ...


class StaticSessionVerifier:
    """
    Token table verifier.

    With an empty table every request is accepted as ``anonymous_user``,
    which is how the development server runs.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None, anonymous_user: str = "local"):
        self.tokens = dict(tokens or {})
        self.anonymous_user = anonymous_user

    def verify(self, token: Optional[str]) -> str:
        if not self.tokens:
            return self.anonymous_user
        if token and token in self.tokens:
            return self.tokens[token]
        logger.warning("[AUTH] Rejected session token")
        raise UnauthorizedError("Invalid or missing session")
