"""
Drag Controller - preview projections and optimistic drag commits

A drag never touches canonical state until release. While it is in flight
the UI is shown a projection computed from the *current* canonical board.
On release the controller re-reads the task under its critical section: if
any other flow committed a change to the task after the drag began, the
drag is discarded (the earlier canonical commit stands); otherwise the drop
is validated against the allowed-drops table and committed.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from taskboard_agent.core.board import BoardSnapshot, TaskBoardStore, to_column, ColumnLike
from taskboard_agent.models.enums import ALLOWED_DROPS, ColumnId
from taskboard_agent.models.task import CalendarItem, Task, new_id, now_iso
from taskboard_agent.utils.exceptions import TaskNotFoundError, NotFoundError
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DragState:
    """An in-flight drag"""
    drag_id: str
    task_id: str
    source_column: ColumnId
    preview_column: ColumnId
    base_version: int
    preview_index: Optional[int] = None
    started_at: str = field(default_factory=now_iso)

    def to_dict(self):
        return {
            "dragId": self.drag_id,
            "taskId": self.task_id,
            "sourceColumnId": self.source_column.value,
            "previewColumnId": self.preview_column.value,
            "previewIndex": self.preview_index,
            "startedAt": self.started_at,
        }


@dataclass
class DropResult:
    """
    Outcome of releasing a drag.

    reason: "committed", "superseded" (another flow changed the task
    mid-drag), "not_allowed" (target not permitted from the source column)
    or "removed" (task deleted mid-drag).
    """
    drag_id: str
    task_id: str
    committed: bool
    reason: str
    column: Optional[ColumnId]
    snapshot: BoardSnapshot

    def to_dict(self):
        return {
            "dragId": self.drag_id,
            "taskId": self.task_id,
            "committed": self.committed,
            "reason": self.reason,
            "columnId": self.column.value if self.column else None,
            "board": self.snapshot.to_dict(),
        }


def calendar_item_for(task: Task, start: str, default_duration_minutes: int = 60) -> CalendarItem:
    """Calendar block starting at ``start`` lasting the task's duration (or the default)."""
    start_dt = datetime.fromisoformat(start)
    minutes = task.duration_minutes or default_duration_minutes
    return CalendarItem(
        start=start_dt.isoformat(),
        end=(start_dt + timedelta(minutes=minutes)).isoformat(),
        gcal_event_id=task.calendar_item.gcal_event_id if task.calendar_item else None,
    )


class DragController:
    """Tracks in-flight drags against one board."""

    def __init__(self, store: TaskBoardStore):
        self.store = store
        self._drags: Dict[str, DragState] = {}
        self._lock = threading.Lock()

    def begin(self, task_id: str) -> DragState:
        with self.store.task_lock(task_id):
            source = self.store.column_of(task_id)
            state = DragState(
                drag_id=new_id("drag_"),
                task_id=task_id,
                source_column=source,
                preview_column=source,
                base_version=self.store.version_of(task_id),
            )
        with self._lock:
            self._drags[state.drag_id] = state
        logger.debug(f"[DRAG] Begin {state.drag_id} for {task_id} from {source.value}")
        return state

    def get(self, drag_id: str) -> DragState:
        with self._lock:
            state = self._drags.get(drag_id)
        if state is None:
            raise NotFoundError("Drag", drag_id)
        return state

    def active(self, task_id: Optional[str] = None) -> List[DragState]:
        with self._lock:
            return [d for d in self._drags.values() if task_id is None or d.task_id == task_id]

    def preview(self, drag_id: str, column: ColumnLike, index: Optional[int] = None) -> BoardSnapshot:
        """Move the pointer; returns the projection for the new preview column."""
        state = self.get(drag_id)
        state.preview_column = to_column(column)
        state.preview_index = index
        return self.store.project(state.task_id, state.preview_column, index)

    def cancel(self, drag_id: str) -> None:
        with self._lock:
            self._drags.pop(drag_id, None)
        logger.debug(f"[DRAG] Cancelled {drag_id}")

    def release(
        self,
        drag_id: str,
        column: Optional[ColumnLike] = None,
        index: Optional[int] = None,
        calendar_item: Optional[CalendarItem] = None,
        slot_start: Optional[str] = None,
    ) -> DropResult:
        """
        Drop the task.

        Args:
            drag_id: Drag to release
            column: Drop column (defaults to the last preview column)
            index: Drop position (defaults to the last preview index)
            calendar_item: Explicit calendar placement for calendar drops
            slot_start: ISO datetime of the calendar slot; used to build the
                calendar item when none is given

        Raises:
            InvalidColumnError: calendar drop without a placement
            StorageError: persisting failed (board unchanged)
        """
        with self._lock:
            state = self._drags.pop(drag_id, None)
        if state is None:
            raise NotFoundError("Drag", drag_id)

        target = to_column(column) if column is not None else state.preview_column
        position = index if index is not None else state.preview_index

        with self.store.task_lock(state.task_id):
            try:
                current_version = self.store.version_of(state.task_id)
                current_column = self.store.column_of(state.task_id)
            except TaskNotFoundError:
                logger.info(f"[DRAG] {drag_id}: task {state.task_id} removed mid-drag")
                return DropResult(drag_id, state.task_id, False, "removed", None, self.store.snapshot())

            if current_version != state.base_version:
                logger.info(
                    f"[DRAG] {drag_id}: {state.task_id} changed mid-drag, "
                    f"keeping canonical column {current_column.value}"
                )
                return DropResult(drag_id, state.task_id, False, "superseded", current_column,
                                  self.store.snapshot())

            if target not in ALLOWED_DROPS[current_column]:
                logger.info(f"[DRAG] {drag_id}: drop {current_column.value} -> {target.value} not allowed")
                return DropResult(drag_id, state.task_id, False, "not_allowed", current_column,
                                  self.store.snapshot())

            if target == ColumnId.CALENDAR and calendar_item is None and slot_start:
                calendar_item = calendar_item_for(
                    self.store.get_task(state.task_id), slot_start, self.store.default_duration_minutes
                )

            snapshot = self.store.move_task(
                state.task_id, current_column, target, position, calendar_item=calendar_item
            )

        return DropResult(drag_id, state.task_id, True, "committed", target, snapshot)
