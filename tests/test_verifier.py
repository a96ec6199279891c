"""
Tests for the result verifier.
"""

import json

import pytest

from taskboard_agent.core.verifier import ResultVerifier
from taskboard_agent.utils.exceptions import ModelTimeoutError

from scripted_channel import ScriptedModelChannel, call, mark_results, turn


class TestResultVerifier:

    def setup_method(self):
        self.channel = ScriptedModelChannel()
        self.verifier = ResultVerifier(self.channel, default_timeout=12)

    def test_verdicts(self):
        self.channel.add(mark_results(("create task", True), ("move task", False)))

        report = self.verifier.verify(["create task", "move task"], "call create_task: {}")

        assert report.success
        assert report.message == "Results processed successfully"
        assert [(r.task, r.result) for r in report.results] == [("create task", True), ("move task", False)]
        assert self.channel.tool_choices == ["mark_results"]
        assert self.channel.calls[0]["timeout"] == 12

    def test_prompt_lists_items_and_results(self):
        self.channel.add(mark_results(("a", True)))
        self.verifier.verify(["a"], "result create_task (ok): {}", timeout=3)

        system = self.channel.calls[0]["messages"][0].content
        assert "- a" in system
        assert "result create_task (ok)" in system
        assert self.channel.calls[0]["timeout"] == 3

    def test_json_string_arguments(self):
        payload = {"todo_list": [{"task": "a", "reason": "done", "result": True}]}
        self.channel.add(turn("", call("mark_results", json.dumps(payload))))

        report = self.verifier.verify(["a"], "")
        assert report.success
        assert report.results[0].reason == "done"

    def test_no_tool_call(self):
        self.channel.add(turn("Everything looks fine."))

        report = self.verifier.verify(["a"], "")

        assert not report.success
        assert report.message == "No results were processed"
        assert report.results == []

    def test_malformed_verdict(self):
        self.channel.add(turn("", call("mark_results", {"todo_list": [{"task": "a", "result": True}]})))

        report = self.verifier.verify(["a"], "")

        assert not report.success
        assert report.message == "Failed to process results"

    def test_unparseable_arguments(self):
        self.channel.add(turn("", call("mark_results", "{not json")))
        assert not self.verifier.verify(["a"], "").success

    def test_channel_errors_propagate(self):
        self.channel.add(ModelTimeoutError("Model call", 12))
        with pytest.raises(ModelTimeoutError):
            self.verifier.verify(["a"], "")

    def test_report_to_dict(self):
        self.channel.add(mark_results(("a", True)))
        data = self.verifier.verify(["a"], "").to_dict()
        assert data == {
            "results": [{"task": "a", "reason": "checked", "result": True}],
            "success": True,
            "message": "Results processed successfully",
        }
