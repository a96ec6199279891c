"""
Tests for the task board store.
"""

import threading
from unittest.mock import Mock

import pytest

from taskboard_agent.core.board import TaskBoardStore, to_column
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.persistence import InMemoryTaskRepository, StaticSessionVerifier
from taskboard_agent.models.enums import ColumnId, Importance, Urgency
from taskboard_agent.models.task import CalendarItem, Subtask, Task
from taskboard_agent.utils.exceptions import (
    InvalidColumnError,
    NotFoundError,
    StorageError,
    SubtaskNotFoundError,
    TaskNotFoundError,
    UnauthorizedError,
)

from taskboard_agent.utils.keyed_lock import KeyedLock

from scripted_channel import seed_board

SLOT = CalendarItem(start="2025-01-15T13:00:00", end="2025-01-15T14:00:00")


def assert_single_placement(store):
    snapshot = store.snapshot()
    for task_id in snapshot.task_ids():
        assert snapshot.occurrences(task_id) == 1, task_id


class TestBoardReads:

    def setup_method(self):
        self.store = seed_board()

    def test_columns_in_order(self):
        snapshot = self.store.snapshot()
        assert snapshot.column_ids("backlog") == ["t1", "t2"]
        assert snapshot.column_ids(ColumnId.TODAY) == ["t3"]
        assert snapshot.locate("t4") == ColumnId.CALENDAR

    def test_snapshot_is_a_copy(self):
        snapshot = self.store.snapshot()
        snapshot.get("t1").title = "changed"
        assert self.store.get_task("t1").title == "Renew passport"

    def test_to_dict_shape(self):
        data = self.store.snapshot().to_dict()
        assert set(data["columns"]) == {"backlog", "incomplete", "today", "future", "calendar"}
        assert data["columns"]["calendar"][0]["calendarItem"]["start"] == "2025-01-16T09:00:00"

    def test_unknown_task(self):
        with pytest.raises(TaskNotFoundError):
            self.store.get_task("nope")
        assert not self.store.has_task("nope")

    def test_unknown_column(self):
        with pytest.raises(InvalidColumnError):
            to_column("someday")

    def test_tasks_in_range(self):
        self.store.move_task("t1", "backlog", "calendar", calendar_item=SLOT)
        tasks = self.store.tasks_in_range("2025-01-15", "2025-01-16")
        assert [t.id for t in tasks] == ["t1", "t4"]
        assert self.store.tasks_in_range("2025-01-17", "2025-01-20") == []

    def test_column_for_date(self):
        today = "2025-01-15"
        assert self.store.column_for_date(None, today=today) == ColumnId.BACKLOG
        assert self.store.column_for_date("2025-01-15", today=today) == ColumnId.TODAY
        assert self.store.column_for_date("2025-01-20", today=today) == ColumnId.FUTURE
        assert self.store.column_for_date("2025-01-01", today=today) == ColumnId.INCOMPLETE
        assert self.store.column_for_date("2025-01-01", has_time=True, today=today) == ColumnId.CALENDAR

    def test_projection_does_not_commit(self):
        revision = self.store.revision
        projection = self.store.project("t1", "today", 0)
        assert projection.column_ids("today") == ["t1", "t3"]
        assert projection.occurrences("t1") == 1
        assert self.store.column_of("t1") == ColumnId.BACKLOG
        assert self.store.revision == revision


class TestBoardMutations:

    def setup_method(self):
        self.bus = EventBus()
        self.store = seed_board(TaskBoardStore(event_bus=self.bus))

    def test_upsert_inserts_by_order(self):
        self.store.upsert_task(Task(id="t5", title="First", column_id=ColumnId.BACKLOG, order=-1))
        assert self.store.snapshot().column_ids("backlog") == ["t5", "t1", "t2"]

    def test_upsert_replaces_in_place(self):
        created_at = self.store.get_task("t2").created_at
        self.store.upsert_task(Task(id="t2", title="Clean shed", column_id=ColumnId.BACKLOG, order=1))
        task = self.store.get_task("t2")
        assert task.title == "Clean shed"
        assert task.created_at == created_at
        assert_single_placement(self.store)

    def test_upsert_then_read_returns_same_task(self):
        task = Task(
            id="t9",
            title="Quarterly review",
            column_id=ColumnId.CALENDAR,
            description="Prepare slides first",
            subtasks=[Subtask(id="s1", text="Slides"), Subtask(id="s2", text="Numbers", completed=True)],
            tags={"work", "q1"},
            calendar_item=CalendarItem(start="2025-01-20T10:00:00", end="2025-01-20T11:30:00",
                                       gcal_event_id="evt_42"),
            duration_minutes=90,
            urgency=Urgency.SOON.value,
            importance=Importance.CRITICAL.value,
            order=3,
        )

        self.store.upsert_task(task)

        stored = self.store.get_task("t9")
        assert stored.content_equals(task)
        assert stored is not task

    def test_upsert_calendar_requires_item(self):
        with pytest.raises(InvalidColumnError):
            self.store.upsert_task(Task(id="t9", title="x", column_id=ColumnId.CALENDAR))

    def test_move_renumbers_target(self):
        self.store.move_task("t2", "backlog", "today", 0)
        today = self.store.list_column("today")
        assert [t.id for t in today] == ["t2", "t3"]
        assert [t.order for t in today] == [0, 1]
        assert self.store.snapshot().column_ids("backlog") == ["t1"]
        assert_single_placement(self.store)

    def test_move_index_is_clamped(self):
        self.store.move_task("t1", "backlog", "today", 99)
        assert self.store.snapshot().column_ids("today") == ["t3", "t1"]

    def test_move_within_column(self):
        self.store.move_task("t2", "backlog", "backlog", 0)
        assert self.store.snapshot().column_ids("backlog") == ["t2", "t1"]

    def test_move_stale_source(self):
        with pytest.raises(InvalidColumnError) as exc:
            self.store.move_task("t1", "today", "future")
        assert "is in 'backlog'" in exc.value.reason

    def test_move_unknown_task(self):
        with pytest.raises(TaskNotFoundError):
            self.store.move_task("nope", "backlog", "today")

    def test_calendar_requires_item(self):
        with pytest.raises(InvalidColumnError):
            self.store.move_task("t1", "backlog", "calendar")
        assert self.store.column_of("t1") == ColumnId.BACKLOG

    def test_leaving_calendar_strips_item(self):
        self.store.move_task("t4", "calendar", "backlog")
        assert self.store.get_task("t4").calendar_item is None

    def test_version_bumps_only_for_the_moved_task(self):
        before = self.store.version_of("t1")
        other = self.store.version_of("t3")
        self.store.move_task("t1", "backlog", "today")
        assert self.store.version_of("t1") > before
        assert self.store.version_of("t3") == other

    def test_remove(self):
        self.store.remove_task("t1")
        assert not self.store.has_task("t1")
        with pytest.raises(TaskNotFoundError):
            self.store.remove_task("t1")

    def test_subtask_completion_is_idempotent(self):
        self.store.mark_subtask_completed("t3", "s1")
        revision = self.store.revision
        self.store.mark_subtask_completed("t3", "s1")
        assert self.store.revision == revision
        assert self.store.get_task("t3").find_subtask("s1").completed

    def test_missing_subtask(self):
        with pytest.raises(SubtaskNotFoundError):
            self.store.mark_subtask_completed("t3", "s9")

    def test_load_rejects_duplicates(self):
        with pytest.raises(InvalidColumnError):
            self.store.load([
                Task(id="x", title="a", column_id=ColumnId.TODAY),
                Task(id="x", title="b", column_id=ColumnId.BACKLOG),
            ])

    def test_events_published(self):
        self.store.move_task("t1", "backlog", "today")
        payload = self.bus.get_event_history("task_moved")[0].event["payload"]
        assert payload["task_id"] == "t1"
        assert payload["from_column"] == "backlog"
        assert payload["to_column"] == "today"
        assert payload["revision"] == self.store.revision

    def test_concurrent_moves_keep_single_placement(self):
        for i in range(20):
            self.store.upsert_task(Task(id=f"c{i}", title=f"Task {i}", column_id=ColumnId.BACKLOG, order=10 + i))

        def move(task_id):
            self.store.move_task(task_id, "backlog", "today")

        threads = [threading.Thread(target=move, args=(f"c{i}",)) for i in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = self.store.snapshot()
        assert len(snapshot.column_ids("today")) == 21
        assert snapshot.column_ids("backlog") == ["t1", "t2"]
        assert_single_placement(self.store)


class TestBoardPersistence:
    """Write-through with rollback."""

    def test_repository_receives_mutations(self):
        repository = InMemoryTaskRepository()
        store = TaskBoardStore(repository=repository)
        store.upsert_task(Task(id="p1", title="Persisted", column_id=ColumnId.BACKLOG))
        store.move_task("p1", "backlog", "calendar", calendar_item=SLOT)

        stored = repository.get("p1")
        assert stored.column_id == ColumnId.CALENDAR
        assert stored.calendar_item.start == SLOT.start
        assert [t.id for t in repository.query(("2025-01-15", "2025-01-15"))] == ["p1"]

        store.remove_task("p1")
        assert repository.get("p1") is None

    def test_failed_update_rolls_back(self):
        repository = Mock()
        repository.update.side_effect = RuntimeError("disk full")
        store = seed_board(TaskBoardStore(repository=repository))

        with pytest.raises(StorageError) as exc:
            store.move_task("t1", "backlog", "today", 0)

        assert exc.value.error_code == "STORAGE_ERROR"
        assert store.column_of("t1") == ColumnId.BACKLOG
        assert store.snapshot().column_ids("today") == ["t3"]
        assert store.get_task("t3").order == 0
        assert_single_placement(store)

    def test_rollback_never_hides_the_task(self):
        """A reader racing the rollback sees the task in exactly one column."""
        seen = []
        readers = []

        class ObservedStore(TaskBoardStore):
            def _restore(self, *args):
                reader = threading.Thread(target=lambda: seen.append(self.snapshot().occurrences("t1")))
                reader.start()
                reader.join(0.2)
                readers.append(reader)
                super()._restore(*args)

        repository = Mock()
        repository.update.side_effect = RuntimeError("disk full")
        store = seed_board(ObservedStore(repository=repository))

        with pytest.raises(StorageError):
            store.move_task("t1", "backlog", "today", 0)
        for reader in readers:
            reader.join()

        assert seen == [1]
        assert store.column_of("t1") == ColumnId.BACKLOG
        assert_single_placement(store)

    def test_failed_create_rolls_back(self):
        repository = Mock()
        repository.create.side_effect = RuntimeError("offline")
        store = TaskBoardStore(repository=repository)

        with pytest.raises(StorageError):
            store.upsert_task(Task(id="n1", title="New", column_id=ColumnId.TODAY))
        assert not store.has_task("n1")

    def test_failed_completion_rolls_back(self):
        repository = Mock()
        repository.update.side_effect = RuntimeError("offline")
        store = seed_board(TaskBoardStore(repository=repository))

        with pytest.raises(StorageError):
            store.mark_task_completed("t1")
        assert not store.get_task("t1").completed


class TestCollaborators:

    def test_repository_update_merges_patch(self):
        repository = InMemoryTaskRepository("alice")
        repository.create(Task(id="r1", title="Draft", column_id=ColumnId.BACKLOG))

        updated = repository.update("r1", {"title": "Final", "completed": True})

        assert updated.title == "Final"
        assert repository.get("r1").completed
        with pytest.raises(NotFoundError):
            repository.update("missing", {})
        with pytest.raises(NotFoundError):
            repository.delete("missing")

    def test_static_verifier(self):
        verifier = StaticSessionVerifier({"tok": "alice"})
        assert verifier.verify("tok") == "alice"
        with pytest.raises(UnauthorizedError):
            verifier.verify("other")
        with pytest.raises(UnauthorizedError):
            verifier.verify(None)
        assert StaticSessionVerifier().verify(None) == "local"


class TestKeyedLock:

    def test_entries_dropped_after_release(self):
        locks = KeyedLock()
        with locks.hold_many(["a", "b"]):
            with locks.hold("a"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_waiter_keeps_entry_alive(self):
        locks = KeyedLock()
        entered = threading.Event()

        def contender():
            with locks.hold("t1"):
                entered.set()

        with locks.hold("t1"):
            thread = threading.Thread(target=contender)
            thread.start()
            assert not entered.wait(0.1)
            assert len(locks) == 1
        thread.join(1)

        assert entered.is_set()
        assert len(locks) == 0

    def test_board_keeps_no_locks_for_finished_mutations(self):
        store = seed_board()
        for i in range(20):
            store.upsert_task(Task(id=f"n{i}", title="Errand", column_id=ColumnId.BACKLOG))
        store.move_task("n1", "backlog", "today")
        store.remove_task("n0")
        assert len(store._task_locks) == 0
