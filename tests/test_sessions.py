"""
Tests for the agent session state machine and the session arena.
"""

import pytest

from taskboard_agent.core.sessions import SessionArena
from taskboard_agent.models.enums import ColumnId, Stage, TranscriptKind
from taskboard_agent.models.session import AgentSession
from taskboard_agent.models.task import CalendarItem, Subtask, Task
from taskboard_agent.utils.exceptions import InvalidStateTransitionError, NotFoundError


class TestAgentSession:

    def setup_method(self):
        self.seen = []
        self.session = AgentSession(request="plan my day", observer=lambda s, item: self.seen.append(item))

    def test_stages_move_forward(self):
        self.session.advance(Stage.GATHER)
        self.session.advance(Stage.EXECUTE)
        assert self.session.stage == Stage.EXECUTE
        with pytest.raises(InvalidStateTransitionError):
            self.session.advance(Stage.GATHER)
        assert self.seen[0] == {"type": "stage", "stage": "gather"}

    def test_stages_may_be_skipped(self):
        self.session.advance(Stage.EXECUTE)
        self.session.advance(Stage.COMPLETED)
        assert self.session.is_terminal
        with pytest.raises(InvalidStateTransitionError):
            self.session.advance(Stage.VERIFY)

    def test_error_is_absorbing(self):
        self.session.advance(Stage.GATHER)
        self.session.fail("provider down", "TRANSPORT_ERROR")
        self.session.fail("second failure")

        assert self.session.stage == Stage.ERROR
        assert self.session.error == "provider down"
        assert self.session.error_code == "TRANSPORT_ERROR"
        with pytest.raises(InvalidStateTransitionError):
            self.session.advance(Stage.COMPLETED)

    def test_completed_cannot_fail(self):
        self.session.advance(Stage.COMPLETED)
        with pytest.raises(InvalidStateTransitionError):
            self.session.fail("late")

    def test_error_is_not_an_advance_target(self):
        with pytest.raises(InvalidStateTransitionError):
            self.session.advance(Stage.ERROR)

    def test_transcript_is_tagged_by_stage(self):
        self.session.record(TranscriptKind.TEXT, {"text": "planning"})
        self.session.advance(Stage.GATHER)
        self.session.record(TranscriptKind.TOOL_CALL, {"name": "get_backlog_tasks"})

        assert [e.payload for e in self.session.transcript_for(Stage.GATHER)] == [{"name": "get_backlog_tasks"}]
        data = self.session.to_dict()
        assert data["transcript"][1]["kind"] == "toolCall"
        assert data["transcript"][1]["stage"] == "gather"
        assert data["errorCode"] is None


class TestSessionArena:

    def setup_method(self):
        self.arena = SessionArena()

    def test_open_and_get(self):
        session = self.arena.open("plan", user_id="alice")
        assert self.arena.get(session.session_id) is session
        assert self.arena.get(session.session_id, user_id="alice") is session
        assert self.arena.current("alice") is session

    def test_other_users_cannot_see_session(self):
        session = self.arena.open("plan", user_id="alice")
        with pytest.raises(NotFoundError):
            self.arena.get(session.session_id, user_id="bob")

    def test_new_session_replaces_previous(self):
        first = self.arena.open("first", user_id="alice")
        second = self.arena.open("second", user_id="alice")

        assert first.cancel_requested
        assert self.arena.current("alice") is second
        assert len(self.arena) == 1
        with pytest.raises(NotFoundError):
            self.arena.get(first.session_id)

    def test_users_are_independent(self):
        alice = self.arena.open("a", user_id="alice")
        self.arena.open("b", user_id="bob")
        assert not alice.cancel_requested
        assert len(self.arena) == 2

    def test_cancel_and_discard(self):
        session = self.arena.open("plan", user_id="alice")
        assert self.arena.cancel(session.session_id, "alice").cancel_requested

        self.arena.discard(session.session_id)
        assert self.arena.current("alice") is None
        with pytest.raises(NotFoundError):
            self.arena.cancel(session.session_id)

    def test_voice_sessions(self):
        class Voice:
            session_id = "voice_1"

        voice = Voice()
        self.arena.add_voice(voice)
        assert self.arena.get_voice("voice_1") is voice
        assert self.arena.voice_sessions() == [voice]
        self.arena.remove_voice("voice_1")
        with pytest.raises(NotFoundError):
            self.arena.get_voice("voice_1")


class TestTaskModel:

    def test_from_dict_accepts_camel_case(self):
        task = Task.from_dict({
            "id": "t9",
            "title": "Dentist",
            "columnId": "calendar",
            "calendarItem": {"start": "2025-01-16T09:00:00", "end": "2025-01-16T10:00:00", "gcalEventId": "evt"},
            "subtasks": [{"text": "Bring card"}],
            "tags": ["health"],
            "durationMinutes": 60,
        })
        assert task.column_id == ColumnId.CALENDAR
        assert task.calendar_item.gcal_event_id == "evt"
        assert task.subtasks[0].id.startswith("st_")
        assert task.to_dict()["calendarItem"]["gcalEventId"] == "evt"

    def test_from_dict_defaults_to_backlog(self):
        task = Task.from_dict({"title": "Loose end"})
        assert task.column_id == ColumnId.BACKLOG
        assert task.id.startswith("task_")

    def test_copy_does_not_share_state(self):
        task = Task(id="t1", title="x", column_id="today", subtasks=[Subtask(id="s1", text="a")], tags=["a"],
                    calendar_item=CalendarItem(start="2025-01-15T09:00:00", end="2025-01-15T10:00:00"))
        clone = task.copy(title="y")

        clone.subtasks[0].completed = True
        clone.tags.add("b")
        clone.calendar_item.start = "changed"

        assert clone.title == "y"
        assert not task.subtasks[0].completed
        assert task.tags == {"a"}
        assert task.calendar_item.start == "2025-01-15T09:00:00"
        assert task.content_equals(task.copy(updated_at="later"))
