"""
Tests for the drag controller: projections, commits and conflicts with
agent mutations.
"""

import pytest

from taskboard_agent.core.capabilities import build_default_registry
from taskboard_agent.core.dispatcher import ToolContext, ToolDispatcher
from taskboard_agent.core.drag import DragController, calendar_item_for
from taskboard_agent.models.enums import ColumnId
from taskboard_agent.models.task import CalendarItem, Task
from taskboard_agent.utils.exceptions import InvalidColumnError, NotFoundError

from scripted_channel import TODAY, call, seed_board


class TestDragController:

    def setup_method(self):
        self.store = seed_board()
        self.drags = DragController(self.store)

    def test_preview_is_projection_only(self):
        drag = self.drags.begin("t1")
        assert drag.source_column == ColumnId.BACKLOG

        projection = self.drags.preview(drag.drag_id, "today", 0)
        assert projection.column_ids("today") == ["t1", "t3"]
        assert projection.occurrences("t1") == 1
        assert self.store.column_of("t1") == ColumnId.BACKLOG
        assert self.drags.get(drag.drag_id).preview_column == ColumnId.TODAY

    def test_release_commits(self):
        drag = self.drags.begin("t1")
        result = self.drags.release(drag.drag_id, "today", 0)

        assert result.committed
        assert result.reason == "committed"
        assert result.column == ColumnId.TODAY
        assert result.snapshot.column_ids("today") == ["t1", "t3"]
        assert self.store.column_of("t1") == ColumnId.TODAY

    def test_release_defaults_to_last_preview(self):
        drag = self.drags.begin("t2")
        self.drags.preview(drag.drag_id, "today", 0)
        result = self.drags.release(drag.drag_id)
        assert result.committed
        assert self.store.snapshot().column_ids("today") == ["t2", "t3"]

    def test_drop_not_allowed(self):
        self.store.upsert_task(Task(id="f1", title="Later", column_id=ColumnId.FUTURE))
        drag = self.drags.begin("f1")
        revision = self.store.revision

        result = self.drags.release(drag.drag_id, "incomplete")

        assert not result.committed
        assert result.reason == "not_allowed"
        assert result.column == ColumnId.FUTURE
        assert self.store.revision == revision

    def test_calendar_drop_from_slot(self):
        self.store.upsert_task(Task(id="d1", title="Gym", column_id=ColumnId.TODAY, duration_minutes=45, order=5))
        drag = self.drags.begin("d1")

        result = self.drags.release(drag.drag_id, "calendar", slot_start="2025-01-15T18:00:00")

        assert result.committed
        item = self.store.get_task("d1").calendar_item
        assert item.start == "2025-01-15T18:00:00"
        assert item.end == "2025-01-15T18:45:00"

    def test_calendar_drop_with_explicit_item(self):
        drag = self.drags.begin("t1")
        item = CalendarItem(start="2025-01-15T08:00:00", end="2025-01-15T08:30:00")
        result = self.drags.release(drag.drag_id, "calendar", calendar_item=item)
        assert result.committed
        assert self.store.get_task("t1").calendar_item == item

    def test_calendar_drop_without_placement(self):
        drag = self.drags.begin("t1")
        with pytest.raises(InvalidColumnError):
            self.drags.release(drag.drag_id, "calendar")
        assert self.store.column_of("t1") == ColumnId.BACKLOG

    def test_task_removed_mid_drag(self):
        drag = self.drags.begin("t2")
        self.store.remove_task("t2")
        result = self.drags.release(drag.drag_id, "today")
        assert result.reason == "removed"
        assert not self.store.has_task("t2")

    def test_edit_mid_drag_supersedes(self):
        drag = self.drags.begin("t2")
        self.store.mark_task_completed("t2")
        result = self.drags.release(drag.drag_id, "today")
        assert result.reason == "superseded"
        assert self.store.column_of("t2") == ColumnId.BACKLOG

    def test_unknown_and_cancelled_drags(self):
        with pytest.raises(NotFoundError):
            self.drags.get("drag_missing")

        drag = self.drags.begin("t1")
        self.drags.cancel(drag.drag_id)
        assert self.drags.active() == []
        with pytest.raises(NotFoundError):
            self.drags.release(drag.drag_id, "today")

    def test_released_drag_is_forgotten(self):
        drag = self.drags.begin("t1")
        self.drags.release(drag.drag_id, "today")
        with pytest.raises(NotFoundError):
            self.drags.release(drag.drag_id, "backlog")

    def test_calendar_item_for_keeps_sync_id(self):
        task = Task(id="x", title="x", column_id=ColumnId.CALENDAR,
                    calendar_item=CalendarItem(start="2025-01-15T08:00:00", end="2025-01-15T09:00:00",
                                               gcal_event_id="evt_1"))
        item = calendar_item_for(task, "2025-01-16T10:00:00", 30)
        assert item.end == "2025-01-16T10:30:00"
        assert item.gcal_event_id == "evt_1"


class TestDragAgainstAgent:
    """A drag and an agent tool call targeting the same task."""

    def setup_method(self):
        self.store = seed_board()
        self.drags = DragController(self.store)
        self.dispatcher = ToolDispatcher(build_default_registry())
        self.ctx = ToolContext(board=self.store, today=TODAY)

    def test_agent_commit_wins_over_drag(self):
        drag = self.drags.begin("t1")
        projection = self.drags.preview(drag.drag_id, "today")
        assert projection.locate("t1") == ColumnId.TODAY

        outcome = self.dispatcher.dispatch("execute", call("move_task", {
            "task_id": "t1", "new_date": TODAY, "new_start_time": "16:00", "new_end_time": "17:00",
        }), self.ctx)
        assert outcome.ok

        # A fresh projection is computed from the new canonical board
        projection = self.drags.preview(drag.drag_id, "today")
        assert projection.occurrences("t1") == 1

        result = self.drags.release(drag.drag_id, "today")

        assert not result.committed
        assert result.reason == "superseded"
        assert result.column == ColumnId.CALENDAR
        assert self.store.column_of("t1") == ColumnId.CALENDAR
        assert result.snapshot.occurrences("t1") == 1
        assert result.snapshot.column_ids("today") == ["t3"]
