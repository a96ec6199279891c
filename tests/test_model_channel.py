"""
Tests for the LangChain model channel adapter, with the chat model mocked.
"""

import os
import threading
from unittest.mock import Mock, patch

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage

from taskboard_agent.config.agent_config import LLMConfig
from taskboard_agent.core.model_channel import LangChainModelChannel, content_text, turn_from_message
from taskboard_agent.utils.exceptions import ConfigurationError, ModelTimeoutError, TransportError

TOOLS = [{"type": "function", "function": {"name": "create_task", "parameters": {"type": "object"}}}]
MESSAGES = [HumanMessage(content="add a task")]


class TestLangChainModelChannel:

    def setup_method(self):
        self.bound = Mock()
        self.llm = Mock()
        self.llm.bind_tools.return_value = self.bound
        self.channel = LangChainModelChannel(llm=self.llm)

    def teardown_method(self):
        self.channel.close()

    def test_tool_calls_are_returned(self):
        self.bound.invoke.return_value = AIMessage(
            content="Creating it.",
            tool_calls=[{"name": "create_task", "args": {"title": "x"}, "id": "c1"}],
        )

        turn = self.channel.invoke(MESSAGES, TOOLS, timeout=5, tool_choice="any")

        self.llm.bind_tools.assert_called_once_with(TOOLS, tool_choice="any")
        assert turn.text == "Creating it."
        assert [(c.name, c.raw_arguments, c.call_id) for c in turn.tool_calls] == [("create_task", {"title": "x"}, "c1")]
        assert turn.to_message() is turn.message

    def test_without_tools_the_model_is_not_bound(self):
        self.llm.invoke.return_value = AIMessage(content="plain")
        assert self.channel.invoke(MESSAGES, [], timeout=5).text == "plain"
        self.llm.bind_tools.assert_not_called()

    def test_provider_failure(self):
        self.bound.invoke.side_effect = RuntimeError("503 overloaded")
        with pytest.raises(TransportError) as exc:
            self.channel.invoke(MESSAGES, TOOLS, timeout=5)
        assert "503 overloaded" in exc.value.message

    def test_timeout(self):
        release = threading.Event()
        self.bound.invoke.side_effect = lambda messages: release.wait(2)
        try:
            with pytest.raises(ModelTimeoutError) as exc:
                self.channel.invoke(MESSAGES, TOOLS, timeout=0.05)
            assert exc.value.error_code == "TIMEOUT"
        finally:
            release.set()

    def test_malformed_response(self):
        self.bound.invoke.return_value = "not a message"
        with pytest.raises(TransportError):
            self.channel.invoke(MESSAGES, TOOLS, timeout=5)

    def test_streaming_reports_deltas(self):
        self.bound.stream.return_value = iter([AIMessageChunk(content="Hel"), AIMessageChunk(content="lo")])
        deltas = []

        turn = self.channel.invoke(MESSAGES, TOOLS, timeout=5, on_text=deltas.append)

        assert deltas == ["Hel", "lo"]
        assert turn.text == "Hello"
        assert turn.tool_calls == []

    def test_empty_stream(self):
        self.bound.stream.return_value = iter([])
        with pytest.raises(TransportError):
            self.channel.invoke(MESSAGES, TOOLS, timeout=5, on_text=lambda delta: None)


class TestMessageConversion:

    def test_invalid_tool_calls_keep_raw_arguments(self):
        message = AIMessage(content="", invalid_tool_calls=[
            {"name": "create_task", "args": "{bad", "id": "c2", "error": None, "type": "invalid_tool_call"},
        ])
        turn = turn_from_message(message)
        assert turn.tool_calls[0].raw_arguments == "{bad"

    def test_content_blocks(self):
        assert content_text([{"type": "text", "text": "a"}, {"type": "tool_use"}, "b"]) == "ab"
        assert content_text(None) == ""

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError):
            LangChainModelChannel(LLMConfig())
