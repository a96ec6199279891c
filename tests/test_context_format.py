"""
Tests for board context formatting and short task references.
"""

from taskboard_agent.models.enums import ColumnId
from taskboard_agent.models.task import Task
from taskboard_agent.utils.context_format import TaskIdMapping, format_board_context, format_task

from scripted_channel import seed_board


class TestTaskIdMapping:

    def test_references_resolve(self):
        mapping = TaskIdMapping(["task_a", "task_b"])
        assert mapping.resolve("#2") == "task_b"
        assert mapping.resolve("1") == "task_a"
        assert mapping.resolve(1) == "task_a"
        assert mapping.short_id("task_b") == 2

    def test_unknown_references_pass_through(self):
        mapping = TaskIdMapping(["task_a"])
        assert mapping.resolve("#9") == "#9"
        assert mapping.resolve("task_z") == "task_z"

    def test_add_is_stable(self):
        mapping = TaskIdMapping()
        assert mapping.add("x") == 1
        assert mapping.add("y") == 2
        assert mapping.add("x") == 1
        assert len(mapping) == 2
        assert mapping.to_dict() == {"1": "x", "2": "y"}


class TestFormatBoard:

    def test_sections_in_display_order(self):
        mapping = TaskIdMapping()
        text = format_board_context(seed_board().snapshot().columns, mapping, today="2025-01-15")

        assert text.startswith("Today is 2025-01-15.")
        assert text.index("Calendar:") < text.index("Today:") < text.index("Backlog:")
        assert "Upcoming:" not in text
        assert "  - [ ] #1 Dentist" in text
        assert "(Time: 2025-01-16 9:00 AM - 10:00 AM)" in text
        assert "    - [ ] (s1) Outline" in text
        assert mapping.resolve("#3") == "t1"

    def test_empty_board(self):
        assert "The board is empty." in format_board_context({}, today="2025-01-15")
        assert format_board_context({}) == "The board is empty.\n"

    def test_task_metadata(self):
        task = Task(id="m1", title="Gym", column_id=ColumnId.TODAY, description="Leg day",
                    duration_minutes=45, urgency="immediate", tags={"health", "fitness"}, completed=True)
        line = format_task(task, TaskIdMapping())
        assert line.startswith("  - [x] #1 Gym")
        assert "Description: Leg day" in line
        assert "Urgency: immediate | Duration: 45m | Tags: fitness, health" in line
