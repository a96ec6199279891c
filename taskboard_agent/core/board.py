"""
Task Board Store - canonical ordered task collection partitioned into columns

Three flows mutate the board concurrently: direct user edits, drag-and-drop
and agent tool calls (pipeline or voice). Every mutation keeps the central
invariant that a task id is present in exactly one column.

Locking:
    per-task critical section (KeyedLock) -> structure lock
The structure lock is held only while the in-memory columns change, never
during repository I/O, so mutations of different task ids proceed
independently.

Persistence is optimistic write-through: the change is applied canonically,
then persisted; if persisting fails the change is rolled back and the error
is raised.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.models.enums import ColumnId
from taskboard_agent.models.messages import create_system_event
from taskboard_agent.models.task import CalendarItem, Task, now_iso
from taskboard_agent.utils.exceptions import (
    InvalidColumnError,
    StorageError,
    SubtaskNotFoundError,
    TaskBoardError,
    TaskNotFoundError,
)
from taskboard_agent.utils.keyed_lock import KeyedLock
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)

ColumnLike = Union[ColumnId, str]


def to_column(value: ColumnLike) -> ColumnId:
    """Coerce to ColumnId or raise InvalidColumnError."""
    if isinstance(value, ColumnId):
        return value
    try:
        return ColumnId(value)
    except ValueError:
        raise InvalidColumnError(str(value), "unknown column") from None


@dataclass(frozen=True)
class BoardSnapshot:
    """Immutable copy of the board at one revision."""
    columns: Dict[ColumnId, Tuple[Task, ...]]
    revision: int
    versions: Dict[str, int] = field(default_factory=dict)

    def column(self, column: ColumnLike) -> List[Task]:
        return list(self.columns.get(to_column(column), ()))

    def locate(self, task_id: str) -> Optional[ColumnId]:
        for column, tasks in self.columns.items():
            if any(t.id == task_id for t in tasks):
                return column
        return None

    def occurrences(self, task_id: str) -> int:
        return sum(1 for tasks in self.columns.values() for t in tasks if t.id == task_id)

    def get(self, task_id: str) -> Optional[Task]:
        for tasks in self.columns.values():
            for task in tasks:
                if task.id == task_id:
                    return task
        return None

    def task_ids(self) -> List[str]:
        return [t.id for tasks in self.columns.values() for t in tasks]

    def column_ids(self, column: ColumnLike) -> List[str]:
        return [t.id for t in self.column(column)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self.revision,
            "columns": {
                column.value: [t.to_dict() for t in tasks]
                for column, tasks in self.columns.items()
            },
        }


class TaskBoardStore:
    """
    Authoritative per-column task ordering.

    Attributes:
        repository: Optional TaskRepository receiving every committed mutation
        event_bus: Optional EventBus receiving board events
        default_duration_minutes: Calendar block length for tasks without a duration
    """

    def __init__(self, repository=None, event_bus: Optional[EventBus] = None,
                 default_duration_minutes: int = 60):
        self.repository = repository
        self.event_bus = event_bus
        self.default_duration_minutes = default_duration_minutes

        self._columns: Dict[ColumnId, List[Task]] = {c: [] for c in ColumnId}
        self._index: Dict[str, ColumnId] = {}
        self._versions: Dict[str, int] = {}
        self._revision = 0
        self._lock = threading.RLock()
        self._task_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Critical sections
    # ------------------------------------------------------------------

    @contextmanager
    def task_lock(self, *task_ids: str) -> Iterator[None]:
        """Per-task critical section. Re-entrant for the holding thread."""
        with self._task_locks.hold_many(task_ids):
            yield

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            column = self._index.get(task_id)
            if column is None:
                raise TaskNotFoundError(task_id)
            return self._find(column, task_id).copy()

    def has_task(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._index

    def column_of(self, task_id: str) -> ColumnId:
        with self._lock:
            column = self._index.get(task_id)
            if column is None:
                raise TaskNotFoundError(task_id)
            return column

    def version_of(self, task_id: str) -> int:
        with self._lock:
            if task_id not in self._index:
                raise TaskNotFoundError(task_id)
            return self._versions[task_id]

    def list_column(self, column: ColumnLike) -> List[Task]:
        column = to_column(column)
        with self._lock:
            return [t.copy() for t in self._columns[column]]

    def snapshot(self) -> BoardSnapshot:
        with self._lock:
            return BoardSnapshot(
                columns={c: tuple(t.copy() for t in tasks) for c, tasks in self._columns.items()},
                revision=self._revision,
                versions=dict(self._versions),
            )

    def tasks_in_range(self, start_date: str, end_date: str) -> List[Task]:
        """Tasks whose calendar item starts within [start_date, end_date] (ISO dates)."""
        with self._lock:
            found = [
                t.copy() for tasks in self._columns.values() for t in tasks
                if t.calendar_item and start_date <= t.calendar_item.start[:10] <= end_date
            ]
        return sorted(found, key=lambda t: t.calendar_item.start)

    def next_order(self, column: ColumnLike) -> int:
        column = to_column(column)
        with self._lock:
            tasks = self._columns[column]
            return (max(t.order for t in tasks) + 1) if tasks else 0

    def project(self, task_id: str, column: ColumnLike, index: Optional[int] = None) -> BoardSnapshot:
        """
        Preview projection: the current canonical board with ``task_id`` shown
        in ``column`` at ``index``. Nothing is committed.
        """
        column = to_column(column)
        base = self.snapshot()
        task = base.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        columns = {c: [t for t in tasks if t.id != task_id] for c, tasks in base.columns.items()}
        target = columns[column]
        position = len(target) if index is None else max(0, min(index, len(target)))
        target.insert(position, task.copy(column_id=column))
        return BoardSnapshot(
            columns={c: tuple(tasks) for c, tasks in columns.items()},
            revision=base.revision,
            versions=base.versions,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def load(self, tasks: List[Task]) -> BoardSnapshot:
        """Replace the board contents without persisting (initial hydration)."""
        with self._lock:
            self._columns = {c: [] for c in ColumnId}
            self._index.clear()
            self._versions.clear()
            self._revision += 1
            for task in tasks:
                if task.id in self._index:
                    raise InvalidColumnError(task.column_id.value, f"duplicate task id '{task.id}'")
                self._place(task.copy())
                self._versions[task.id] = self._revision
        logger.info(f"[BOARD] Loaded {len(tasks)} tasks")
        return self.snapshot()

    def upsert_task(self, task: Task) -> BoardSnapshot:
        """
        Insert a task or replace it in place.

        The given ``order`` decides the position within the column.

        Raises:
            InvalidColumnError: calendar task without calendar item
            StorageError: persisting failed (change rolled back)
        """
        column = to_column(task.column_id)
        if column == ColumnId.CALENDAR and task.calendar_item is None:
            raise InvalidColumnError(column.value, "calendar tasks require a calendarItem")

        with self.task_lock(task.id):
            with self._lock:
                previous = self._detach(task.id)
                stored = task.copy(column_id=column, updated_at=now_iso())
                if previous is not None:
                    stored.created_at = previous[1].created_at
                self._place(stored)
                self._bump(task.id)

            def rollback():
                self._detach(task.id)
                if previous is not None:
                    self._restore(*previous)
                else:
                    self._versions.pop(task.id, None)

            if previous is None:
                self._persist("create", rollback, lambda repo: repo.create(stored.copy()))
            else:
                self._persist("update", rollback, lambda repo: repo.update(task.id, stored.to_dict()))

        self._publish("task_upserted", {"task_id": task.id, "column": column.value,
                                        "created": previous is None})
        logger.info(f"[BOARD] {'Created' if previous is None else 'Updated'} {task.id} in {column.value}")
        return self.snapshot()

    def move_task(
        self,
        task_id: str,
        from_column: ColumnLike,
        to_column_id: ColumnLike,
        target_index: Optional[int] = None,
        calendar_item: Optional[CalendarItem] = None,
    ) -> BoardSnapshot:
        """
        Move a task between (or within) columns.

        Inserting at ``target_index`` renumbers only the target column.
        Leaving ``calendar`` strips the calendar item; entering it requires
        one (given here or already on the task).

        Raises:
            TaskNotFoundError: unknown task
            InvalidColumnError: unknown column, stale ``from_column``, missing calendar item
            StorageError: persisting failed (change rolled back)
        """
        source = to_column(from_column)
        target = to_column(to_column_id)

        with self.task_lock(task_id):
            with self._lock:
                current_column = self._index.get(task_id)
                if current_column is None:
                    raise TaskNotFoundError(task_id)
                if current_column != source:
                    raise InvalidColumnError(
                        source.value, f"task '{task_id}' is in '{current_column.value}'"
                    )

                task = self._find(source, task_id)
                new_item = calendar_item or task.calendar_item
                if target == ColumnId.CALENDAR and new_item is None:
                    raise InvalidColumnError(target.value, "calendar tasks require a calendarItem")

                previous = self._detach(task_id)
                moved = task.copy(column_id=target, updated_at=now_iso())
                if target == ColumnId.CALENDAR:
                    moved.calendar_item = new_item
                elif source == ColumnId.CALENDAR:
                    moved.calendar_item = None

                column_tasks = self._columns[target]
                renumbered = [(item, item.order) for item in column_tasks]
                position = len(column_tasks) if target_index is None else max(0, min(target_index, len(column_tasks)))
                column_tasks.insert(position, moved)
                for order, item in enumerate(column_tasks):
                    item.order = order
                self._index[task_id] = target
                self._bump(task_id)

            def rollback():
                self._detach(task_id)
                for item, order in renumbered:
                    item.order = order
                self._restore(*previous)

            patch = {
                "columnId": target.value,
                "order": moved.order,
                "calendarItem": moved.calendar_item.to_dict() if moved.calendar_item else None,
            }
            self._persist("update", rollback, lambda repo: repo.update(task_id, patch))

        self._publish("task_moved", {
            "task_id": task_id,
            "from_column": source.value,
            "to_column": target.value,
            "index": position,
        })
        logger.info(f"[BOARD] Moved {task_id}: {source.value} -> {target.value}[{position}]")
        return self.snapshot()

    def remove_task(self, task_id: str) -> BoardSnapshot:
        with self.task_lock(task_id):
            with self._lock:
                previous = self._detach(task_id)
                if previous is None:
                    raise TaskNotFoundError(task_id)
                version = self._versions.pop(task_id, None)
                self._revision += 1

            def rollback():
                self._restore(*previous)
                self._versions[task_id] = version

            self._persist("delete", rollback, lambda repo: repo.delete(task_id))

        self._publish("task_removed", {"task_id": task_id, "column": previous[0].value})
        logger.info(f"[BOARD] Removed {task_id}")
        return self.snapshot()

    def mark_subtask_completed(self, task_id: str, subtask_id: str) -> BoardSnapshot:
        """Idempotent: completing an already-completed subtask changes nothing."""
        with self.task_lock(task_id):
            with self._lock:
                column = self._index.get(task_id)
                if column is None:
                    raise TaskNotFoundError(task_id)
                task = self._find(column, task_id)
                subtask = task.find_subtask(subtask_id)
                if subtask is None:
                    raise SubtaskNotFoundError(task_id, subtask_id)
                if subtask.completed:
                    return self.snapshot()
                before = task.copy()
                subtask.completed = True
                task.updated_at = now_iso()
                self._bump(task_id)

            self._persist(
                "update",
                lambda: self._replace_in_place(column, before),
                lambda repo: repo.update(task_id, {"subtasks": [s.to_dict() for s in task.subtasks]}),
            )

        self._publish("task_upserted", {"task_id": task_id, "column": column.value, "created": False})
        return self.snapshot()

    def mark_task_completed(self, task_id: str, completed: bool = True) -> BoardSnapshot:
        """Idempotent completion flag update."""
        with self.task_lock(task_id):
            with self._lock:
                column = self._index.get(task_id)
                if column is None:
                    raise TaskNotFoundError(task_id)
                task = self._find(column, task_id)
                if task.completed == completed:
                    return self.snapshot()
                before = task.copy()
                task.completed = completed
                task.updated_at = now_iso()
                self._bump(task_id)

            self._persist(
                "update",
                lambda: self._replace_in_place(column, before),
                lambda repo: repo.update(task_id, {"completed": completed}),
            )

        self._publish("task_upserted", {"task_id": task_id, "column": column.value, "created": False})
        return self.snapshot()

    # ------------------------------------------------------------------
    # Placement helpers
    # ------------------------------------------------------------------

    def column_for_date(self, due_date: Optional[str], has_time: bool = False,
                        today: Optional[str] = None) -> ColumnId:
        """
        Column a task with ``due_date`` belongs in: no date -> backlog,
        date and time -> calendar, today -> today, later -> future, past -> incomplete.
        """
        if not due_date:
            return ColumnId.BACKLOG
        if has_time:
            return ColumnId.CALENDAR
        today = today or date.today().isoformat()
        if due_date == today:
            return ColumnId.TODAY
        return ColumnId.FUTURE if due_date > today else ColumnId.INCOMPLETE

    # ------------------------------------------------------------------
    # Internals (structure lock held by caller unless noted)
    # ------------------------------------------------------------------

    def _find(self, column: ColumnId, task_id: str) -> Task:
        for task in self._columns[column]:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def _place(self, task: Task) -> None:
        """Insert keeping the column sorted by order; equal orders keep arrival order."""
        tasks = self._columns[task.column_id]
        position = len(tasks)
        for i, existing in enumerate(tasks):
            if existing.order > task.order:
                position = i
                break
        tasks.insert(position, task)
        self._index[task.id] = task.column_id

    def _detach(self, task_id: str) -> Optional[Tuple[ColumnId, Task, int]]:
        with self._lock:
            column = self._index.pop(task_id, None)
            if column is None:
                return None
            tasks = self._columns[column]
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    tasks.pop(i)
                    return column, task, i
            return None

    def _restore(self, column: ColumnId, task: Task, index: int) -> None:
        with self._lock:
            tasks = self._columns[column]
            tasks.insert(min(index, len(tasks)), task)
            self._index[task.id] = column
            self._bump(task.id)

    def _replace_in_place(self, column: ColumnId, task: Task) -> None:
        with self._lock:
            tasks = self._columns[column]
            for i, existing in enumerate(tasks):
                if existing.id == task.id:
                    tasks[i] = task
                    self._bump(task.id)
                    return

    def _bump(self, task_id: str) -> None:
        self._revision += 1
        self._versions[task_id] = self._revision

    def _persist(self, operation: str, rollback, call) -> None:
        """
        Run a repository call under the task lock; roll back on any failure.

        The rollback runs under one hold of the structure lock so readers never
        see the task detached from every column.
        """
        if self.repository is None:
            return
        try:
            call(self.repository)
        except TaskBoardError as e:
            logger.error(f"[BOARD] Persist {operation} failed, rolling back: {e.message}")
            with self._lock:
                rollback()
            raise
        except Exception as e:
            logger.error(f"[BOARD] Persist {operation} failed, rolling back: {e}")
            with self._lock:
                rollback()
            raise StorageError(operation, str(e), original_error=e) from e

    def _publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(create_system_event(
            event_type=event_type,
            event_category="board",
            source="board_store",
            payload={**payload, "revision": self._revision},
        ))
