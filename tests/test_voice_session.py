"""
Tests for realtime voice sessions: lifecycle, turn states, tool calls and
the approval gate. The realtime service is replaced by a FakeTransport.
"""

import asyncio
import base64
import json
from unittest.mock import Mock

import numpy as np
import pytest

from taskboard_agent.config.agent_config import TurnDetectionConfig, VoiceConfig
from taskboard_agent.core.capabilities import build_default_registry
from taskboard_agent.core.dispatcher import ToolContext, ToolDispatcher
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.voice import (
    SPEECH_STARTED,
    SPEECH_STOPPED,
    ApprovalGate,
    VoiceActivityDetector,
    VoiceSession,
)
from taskboard_agent.models.enums import ConnectionState, TurnState
from taskboard_agent.utils.exceptions import InvalidStateTransitionError, SessionClosedError, TransportError

from scripted_channel import TODAY, seed_board

LOUD = np.full(240, 16000, dtype="<i2").tobytes()
QUIET = np.zeros(240, dtype="<i2").tobytes()


class FakeTransport:
    """Replays server events; ``receive`` returns None once they run out."""

    def __init__(self, events=(), fail_connect=False, fail_receive=False):
        self.events = list(events)
        self.sent = []
        self.closed = False
        self.fail_connect = fail_connect
        self.fail_receive = fail_receive

    async def connect(self):
        if self.fail_connect:
            raise TransportError("connection refused")

    async def send(self, event):
        self.sent.append(event)

    async def receive(self):
        await asyncio.sleep(0)
        if self.fail_receive:
            raise TransportError("connection reset")
        if self.closed or not self.events:
            return None
        return self.events.pop(0)

    async def close(self):
        self.closed = True

    def sent_types(self):
        return [e["type"] for e in self.sent]


def function_call(call_id, name, arguments):
    return {"type": "response.function_call_arguments.done", "call_id": call_id, "name": name,
            "arguments": json.dumps(arguments) if isinstance(arguments, dict) else arguments}


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class VoiceTestCase:

    def setup_method(self):
        self.bus = EventBus()
        self.store = seed_board()
        self.dispatcher = ToolDispatcher(build_default_registry(), self.bus)
        self.ctx = ToolContext(board=self.store, today=TODAY)
        self.transport = FakeTransport()
        self.events = []
        self.closed = []

    def make_session(self, **kwargs):
        kwargs.setdefault("config", VoiceConfig(api_key="test-key"))
        return VoiceSession(
            self.transport,
            self.dispatcher,
            self.ctx,
            on_event=self.events.append,
            on_close=self.closed.append,
            event_bus=self.bus,
            **kwargs,
        )

    def backlog_titles(self):
        return [t.title for t in self.store.list_column("backlog")]

    def events_of(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


class TestLifecycle(VoiceTestCase):

    def test_open_configures_session(self):
        async def scenario():
            session = self.make_session(capabilities=["create_backlog_task"], instructions="Be brief")
            await session.open()
            return session

        session = asyncio.run(scenario())

        assert session.connection_state == ConnectionState.OPEN
        update = self.transport.sent[0]
        assert update["type"] == "session.update"
        assert [t["name"] for t in update["session"]["tools"]] == ["create_backlog_task", "hang_up"]
        assert update["session"]["instructions"] == "Be brief"
        assert update["session"]["turn_detection"]["type"] == "server_vad"
        assert self.events[-1]["connectionState"] == "open"

    def test_default_capabilities_are_execute_ones(self):
        session = self.make_session()
        assert "create_task" in session.capabilities
        assert "get_backlog_tasks" not in session.capabilities

    def test_connect_failure_closes(self):
        self.transport.fail_connect = True
        session = self.make_session()

        with pytest.raises(TransportError):
            asyncio.run(session.open())

        assert session.connection_state == ConnectionState.CLOSED
        assert session.state.close_reason.startswith("connection_failed")
        assert self.closed == [session]

    def test_cannot_reopen(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.close()
            with pytest.raises(InvalidStateTransitionError):
                await session.open()
            return session

        session = asyncio.run(scenario())
        assert session.state.close_reason == "client_closed"

    def test_run_until_remote_close(self):
        self.transport.events = [
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "add milk"},
            {"type": "response.audio_transcript.done", "transcript": "Done."},
        ]

        async def scenario():
            session = self.make_session()
            await session.open()
            await session.run()
            return session

        session = asyncio.run(scenario())

        assert session.connection_state == ConnectionState.CLOSED
        assert session.state.close_reason == "remote_closed"
        assert [(t.role, t.text) for t in session.state.transcript] == [("user", "add milk"), ("assistant", "Done.")]
        assert [e["role"] for e in self.events_of("transcript")] == ["user", "assistant"]

    def test_transport_failure_closes(self):
        self.transport.fail_receive = True

        async def scenario():
            session = self.make_session()
            await session.open()
            await session.run()
            return session

        session = asyncio.run(scenario())
        assert session.state.close_reason.startswith("transport_error")

    def test_hang_up(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c0", "hang_up", {}))
            return session

        session = asyncio.run(scenario())

        assert session.connection_state == ConnectionState.CLOSED
        assert session.state.close_reason == "hang_up"
        assert self.transport.closed
        assert self.closed == [session]

    def test_audio_after_close(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.close()
            await session.append_audio(QUIET)

        with pytest.raises(SessionClosedError):
            asyncio.run(scenario())

    def test_turn_states_follow_server_events(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            states = []
            for event_type in ("input_audio_buffer.speech_started",
                               "input_audio_buffer.speech_stopped",
                               "response.done"):
                await session.handle_event({"type": event_type})
                states.append(session.turn_state)
            return states

        assert asyncio.run(scenario()) == [TurnState.USER_SPEAKING, TurnState.SERVER_PROCESSING, TurnState.IDLE]
        turns = [r.event["payload"]["turnState"] for r in reversed(self.bus.get_event_history("voice_state_changed"))]
        assert "userSpeaking" in turns

    def test_server_mode_audio_is_forwarded(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.append_audio(b"\x01\x00" * 10)
            buffered = session.buffered_audio_bytes
            await session.handle_event({"type": "input_audio_buffer.committed"})
            return session, buffered

        session, buffered = asyncio.run(scenario())

        assert buffered == 20
        assert session.buffered_audio_bytes == 0
        append = self.transport.sent[-1]
        assert append["type"] == "input_audio_buffer.append"
        assert base64.b64decode(append["audio"]) == b"\x01\x00" * 10

    def test_close_discards_buffered_audio(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.append_audio(LOUD)
            await session.close()
            return session

        assert asyncio.run(scenario()).buffered_audio_bytes == 0


class TestClientTurnDetection(VoiceTestCase):

    def make_session(self, **kwargs):
        kwargs["config"] = VoiceConfig(api_key="test-key", turn_detection=TurnDetectionConfig(
            mode="client", threshold=0.1, prefix_padding_ms=20, silence_duration_ms=40,
        ))
        return super().make_session(**kwargs)

    def test_speech_is_committed_after_silence(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            for frame in [QUIET, QUIET, QUIET, LOUD, QUIET, QUIET, QUIET, QUIET]:
                await session.append_audio(frame)
            return session

        session = asyncio.run(scenario())

        assert self.transport.sent[0]["session"]["turn_detection"] is None
        types = self.transport.sent_types()
        # two frames of prefix padding, the speech frame and the trailing silence
        assert types.count("input_audio_buffer.append") == 7
        assert types[-2:] == ["input_audio_buffer.commit", "response.create"]
        assert session.turn_state == TurnState.SERVER_PROCESSING
        assert session.buffered_audio_bytes == 0
        assert self.events_of("speech")[0]["startMs"] == 10.0


class TestToolCalls(VoiceTestCase):

    def test_immediate_execution(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "create_backlog_task", {"title": "Buy milk"}))
            return session

        session = asyncio.run(scenario())

        assert self.backlog_titles()[-1] == "Buy milk"
        output = self.transport.sent[-2]
        assert output["type"] == "conversation.item.create"
        assert output["item"]["call_id"] == "c1"
        assert "result" in json.loads(output["item"]["output"])
        assert self.transport.sent[-1] == {"type": "response.create"}
        assert session.state.transcript[0].status == "dispatched"
        assert self.events_of("toolCall")[0]["name"] == "create_backlog_task"
        assert self.bus.get_event_history("voice_tool_call")[0].event["payload"]["status"] == "dispatched"

    def test_unselected_capability_is_reported_back(self):
        async def scenario():
            session = self.make_session(capabilities=["create_backlog_task"])
            await session.open()
            await session.handle_event(function_call("c1", "mark_tasks_completed", {"task_ids": ["t1"]}))
            return session

        session = asyncio.run(scenario())

        assert session.is_open
        assert not self.store.get_task("t1").completed
        record = session.state.transcript[0]
        assert record.status == "failed"
        assert record.outcome["error"]["code"] == "UNKNOWN_CAPABILITY"
        assert "UNKNOWN_CAPABILITY" in self.transport.sent[-2]["item"]["output"]

    def test_invalid_arguments_keep_session_open(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "create_backlog_task", {"title": 5}))
            return session

        session = asyncio.run(scenario())

        assert session.is_open
        assert session.state.transcript[0].outcome["error"]["code"] == "INVALID_ARGUMENTS"
        assert self.backlog_titles() == ["Renew passport", "Clean garage"]

    def test_domain_error_is_returned_to_model(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "move_task_to_column",
                                                     {"task_id": "missing", "column": "today"}))
            return session

        session = asyncio.run(scenario())

        assert session.state.transcript[0].status == "failed"
        assert "TASK_NOT_FOUND" in self.transport.sent[-2]["item"]["output"]

    def test_impossible_date_is_returned_to_model(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "create_task", {
                "title": "Call", "due_date": "2025-02-30", "due_time": "10:00",
            }))
            return session

        session = asyncio.run(scenario())

        assert session.is_open
        assert session.state.transcript[0].status == "failed"
        assert "INVALID_DATE" in self.transport.sent[-2]["item"]["output"]
        assert self.transport.sent[-1] == {"type": "response.create"}

    def test_handler_crash_is_returned_to_model(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "create_backlog_task", {"title": "Buy milk"}))
            return session

        self.dispatcher.execute = Mock(side_effect=RuntimeError("disk on fire"))
        session = asyncio.run(scenario())

        assert session.is_open
        record = session.state.transcript[0]
        assert record.status == "failed"
        assert record.outcome["error"]["code"] == "INTERNAL_ERROR"
        assert "disk on fire" in self.transport.sent[-2]["item"]["output"]

    def test_update_plan_records_plan(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c1", "update_plan", {"todo_list": ["Book dentist"]}))

        asyncio.run(scenario())
        assert self.ctx.plan == ["Book dentist"]


class TestApprovalGate(VoiceTestCase):

    def make_session(self, **kwargs):
        kwargs.setdefault("immediate_execution", False)
        return super().make_session(**kwargs)

    def test_approved_call_is_applied(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c2", "create_backlog_task", {"title": "Call plumber"}))
            await wait_for(lambda: "c2" in session.gate.pending())
            applied_early = "Call plumber" in self.backlog_titles()
            assert session.approve("c2")
            await session.wait_for_pending()
            return session, applied_early

        session, applied_early = asyncio.run(scenario())

        assert not applied_early
        assert "Call plumber" in self.backlog_titles()
        assert session.state.transcript[0].status == "dispatched"
        request = self.events_of("approvalRequest")[0]
        assert request["callId"] == "c2"
        assert request["arguments"] == {"title": "Call plumber"}

    def test_denied_call_is_not_applied(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c3", "create_backlog_task", {"title": "Call plumber"}))
            await wait_for(lambda: "c3" in session.gate.pending())
            session.deny("c3")
            await session.wait_for_pending()
            return session

        session = asyncio.run(scenario())

        assert "Call plumber" not in self.backlog_titles()
        record = session.state.transcript[0]
        assert record.status == "denied"
        assert record.outcome["decision"] == "denied"
        assert "did not approve" in self.transport.sent[-2]["item"]["output"]

    def test_silence_denies(self):
        async def scenario():
            session = self.make_session(config=VoiceConfig(api_key="test-key", approval_timeout=0.05))
            await session.open()
            await session.handle_event(function_call("c4", "create_backlog_task", {"title": "Call plumber"}))
            await session.wait_for_pending()
            return session

        session = asyncio.run(scenario())

        assert "Call plumber" not in self.backlog_titles()
        assert session.state.transcript[0].outcome["decision"] == "timed_out"

    def test_close_denies_pending(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("c5", "create_backlog_task", {"title": "Call plumber"}))
            await wait_for(lambda: "c5" in session.gate.pending())
            await session.close()
            await session.wait_for_pending()
            return session

        session = asyncio.run(scenario())

        assert "Call plumber" not in self.backlog_titles()
        assert session.state.transcript[0].status == "denied"

    def test_close_denies_queued_calls_without_prompting(self):
        async def scenario():
            session = self.make_session(config=VoiceConfig(api_key="test-key", approval_timeout=5))
            await session.open()
            await session.handle_event(function_call("a", "create_backlog_task", {"title": "First"}))
            await session.handle_event(function_call("b", "create_backlog_task", {"title": "Second"}))
            await wait_for(lambda: "a" in session.gate.pending())
            await session.close()
            await asyncio.wait_for(session.wait_for_pending(), 1)
            return session

        session = asyncio.run(scenario())

        assert [e["callId"] for e in self.events_of("approvalRequest")] == ["a"]
        assert [r.outcome["decision"] for r in session.state.transcript] == ["denied", "denied"]
        assert self.backlog_titles() == ["Renew passport", "Clean garage"]

    def test_calls_are_handled_in_arrival_order(self):
        async def scenario():
            session = self.make_session()
            await session.open()
            await session.handle_event(function_call("a", "create_backlog_task", {"title": "First"}))
            await session.handle_event(function_call("b", "create_backlog_task", {"title": "Second"}))
            await wait_for(lambda: "a" in session.gate.pending())
            waiting_on_second = "b" in session.gate.pending()
            session.approve("a")
            await wait_for(lambda: "b" in session.gate.pending())
            session.approve("b")
            await session.wait_for_pending()
            return waiting_on_second

        assert asyncio.run(scenario()) is False
        assert self.backlog_titles()[-2:] == ["First", "Second"]

    def test_resolving_unknown_call(self):
        session = self.make_session()
        assert session.approve("nothing") is False


class TestDetectorAndGate:

    def test_rms(self):
        assert VoiceActivityDetector.rms(b"") == 0.0
        assert VoiceActivityDetector.rms(np.full(4, 16384, dtype="<i2").tobytes()) == pytest.approx(0.5)

    def test_detector_signals(self):
        vad = VoiceActivityDetector(threshold=0.1, prefix_padding_ms=0, silence_duration_ms=20)
        signals = [vad.process(frame) for frame in (QUIET, LOUD, LOUD, QUIET, QUIET)]
        assert signals == [None, SPEECH_STARTED, None, None, SPEECH_STOPPED]
        assert vad.speech_start_ms == 10.0

    def test_gate_timeout(self):
        gate = ApprovalGate(timeout=0.01)

        async def scenario():
            return await gate.request("x")

        assert asyncio.run(scenario()).value == "timed_out"
        assert gate.pending() == []
