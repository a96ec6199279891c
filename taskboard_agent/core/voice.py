"""
Realtime Voice Session - duplex audio conversation that can change the board

Connection:  idle -> connecting -> open -> closed
Turns:       idle -> userSpeaking -> serverProcessing -> idle

Turn changes come from the realtime service's VAD events, or from the local
VoiceActivityDetector when turn detection runs client side. Tool calls are
always dispatched with stage ``execute``. With immediate execution off, each
call waits in the ApprovalGate for the user's approve/deny; silence denies.
"""

import asyncio
import base64
import inspect
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np

from taskboard_agent.config.agent_config import TurnDetectionConfig, TurnDetectionMode, VoiceConfig
from taskboard_agent.core.dispatcher import ToolContext, ToolDispatcher
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.realtime import HANG_UP_TOOL, RealtimeTransport
from taskboard_agent.models.capability import ToolCallRequest
from taskboard_agent.models.enums import ApprovalDecision, ConnectionState, StageTag, TurnState
from taskboard_agent.models.messages import create_system_event
from taskboard_agent.models.task import new_id
from taskboard_agent.models.voice import ToolCallEvent, VoiceSessionState, VoiceTranscript
from taskboard_agent.utils.exceptions import (
    DispatchError,
    InvalidStateTransitionError,
    SessionClosedError,
    TransportError,
    UnknownCapabilityError,
)
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)

_CONNECTION_TRANSITIONS = {
    ConnectionState.IDLE: (ConnectionState.CONNECTING, ConnectionState.CLOSED),
    ConnectionState.CONNECTING: (ConnectionState.OPEN, ConnectionState.CLOSED),
    ConnectionState.OPEN: (ConnectionState.CLOSED,),
    ConnectionState.CLOSED: (),
}

SPEECH_STARTED = "speech_started"
SPEECH_STOPPED = "speech_stopped"


class VoiceActivityDetector:
    """
    Energy-based VAD over little-endian PCM16 mono frames.

    Speech starts when a frame's normalised RMS reaches ``threshold`` and
    stops after ``silence_duration_ms`` of quieter audio.
    """

    def __init__(self, threshold: float = 0.5, prefix_padding_ms: int = 300,
                 silence_duration_ms: int = 500, sample_rate: int = 24000):
        self.threshold = threshold
        self.prefix_padding_ms = prefix_padding_ms
        self.silence_duration_ms = silence_duration_ms
        self.sample_rate = sample_rate
        self.speaking = False
        self.speech_start_ms: Optional[float] = None
        self._clock_ms = 0.0
        self._silence_ms = 0.0

    @classmethod
    def from_config(cls, config: TurnDetectionConfig, sample_rate: int = 24000) -> "VoiceActivityDetector":
        return cls(config.threshold, config.prefix_padding_ms, config.silence_duration_ms, sample_rate)

    @staticmethod
    def rms(frame: bytes) -> float:
        samples = np.frombuffer(frame, dtype="<i2").astype(np.float32) / 32768.0
        if samples.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(samples))))

    def frame_ms(self, frame: bytes) -> float:
        return (len(frame) // 2) * 1000.0 / self.sample_rate

    def process(self, frame: bytes) -> Optional[str]:
        """Feed one frame. Returns SPEECH_STARTED, SPEECH_STOPPED or None."""
        duration = self.frame_ms(frame)
        frame_start = self._clock_ms
        self._clock_ms += duration

        if self.rms(frame) >= self.threshold:
            self._silence_ms = 0.0
            if not self.speaking:
                self.speaking = True
                self.speech_start_ms = max(0.0, frame_start - self.prefix_padding_ms)
                return SPEECH_STARTED
            return None

        if self.speaking:
            self._silence_ms += duration
            if self._silence_ms >= self.silence_duration_ms:
                self.speaking = False
                self._silence_ms = 0.0
                return SPEECH_STOPPED
        return None

    def reset(self) -> None:
        self.speaking = False
        self.speech_start_ms = None
        self._silence_ms = 0.0


class ApprovalGate:
    """Pending approvals keyed by tool-call id; timeout counts as a deny."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}

    def pending(self) -> List[str]:
        return list(self._pending)

    async def request(self, call_id: str, timeout: Optional[float] = None) -> ApprovalDecision:
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        try:
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError:
            logger.info(f"[VOICE] Approval for {call_id} timed out; denying")
            return ApprovalDecision.TIMED_OUT
        finally:
            self._pending.pop(call_id, None)

    def resolve(self, call_id: str, approved: bool) -> bool:
        """Returns False when nothing is waiting on ``call_id``."""
        future = self._pending.get(call_id)
        if future is None or future.done():
            return False
        future.set_result(ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED)
        return True

    def deny_all(self) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_result(ApprovalDecision.DENIED)


class VoiceSession:
    """
    One realtime voice conversation.

    Args:
        transport: Duplex channel to the realtime service
        dispatcher: Shared tool dispatcher
        tool_context: Board and notes the tool calls act on
        capabilities: Names the model may call (hang_up is always available)
        config: Voice settings (approval timeout, turn detection)
        immediate_execution: Overrides ``config.immediate_execution``
        on_event: Receives client-facing events (sync or async callable)
        on_close: Called once with the session after it closes (sync or async)
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        dispatcher: ToolDispatcher,
        tool_context: ToolContext,
        capabilities: Optional[Iterable[str]] = None,
        config: Optional[VoiceConfig] = None,
        immediate_execution: Optional[bool] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        instructions: Optional[str] = None,
        on_event: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_close: Optional[Callable[["VoiceSession"], Any]] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.transport = transport
        self.dispatcher = dispatcher
        self.tool_context = tool_context
        self.config = config or VoiceConfig()
        self.instructions = instructions
        self.on_event = on_event
        self.on_close = on_close
        self.event_bus = event_bus

        names = list(capabilities) if capabilities else [
            c.name for c in dispatcher.registry.list_by_stage(StageTag.EXECUTE)
        ]
        self.capabilities = frozenset(names)

        immediate = self.config.immediate_execution if immediate_execution is None else immediate_execution
        self.state = VoiceSessionState(
            session_id=session_id or new_id("voice_"),
            user_id=user_id,
            immediate_execution=immediate,
        )
        if self.tool_context.session_id is None:
            self.tool_context.session_id = self.state.session_id

        self.gate = ApprovalGate(self.config.approval_timeout)
        turn_detection = self.config.turn_detection
        self.vad = (
            VoiceActivityDetector.from_config(turn_detection)
            if turn_detection.mode == TurnDetectionMode.CLIENT.value else None
        )
        self._preroll: Deque[Tuple[bytes, float]] = deque()
        self._audio_buffer: List[bytes] = []
        self._call_lock = asyncio.Lock()
        self._tasks: set = set()

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def connection_state(self) -> ConnectionState:
        return self.state.connection_state

    @property
    def turn_state(self) -> TurnState:
        return self.state.turn_state

    @property
    def is_open(self) -> bool:
        return self.state.connection_state == ConnectionState.OPEN

    @property
    def buffered_audio_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._audio_buffer)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def open(self) -> None:
        """
        Connect and configure the realtime session.

        Raises:
            InvalidStateTransitionError: the session is not idle
            TransportError: the connection failed (the session is closed)
        """
        self._set_connection(ConnectionState.CONNECTING)
        try:
            await self.transport.connect()
        except TransportError as e:
            logger.error(f"[VOICE] Connection failed for {self.session_id}: {e.message}")
            await self.close(reason=f"connection_failed: {e.message}")
            raise

        self._set_connection(ConnectionState.OPEN)
        await self._send(self._session_update())
        await self._emit({"type": "state", **self._state_summary()})
        logger.info(f"[VOICE] Session {self.session_id} open "
                    f"(immediate_execution={self.state.immediate_execution})")

    async def run(self) -> None:
        """Consume server events until the channel ends or the session closes."""
        while self.is_open:
            try:
                event = await self.transport.receive()
            except TransportError as e:
                logger.error(f"[VOICE] Transport failure in {self.session_id}: {e.message}")
                await self.close(reason=f"transport_error: {e.message}")
                return
            if event is None:
                await self.close(reason="remote_closed")
                return
            await self.handle_event(event)

    async def close(self, reason: str = "client_closed") -> None:
        """
        Close the session: buffered audio is discarded and pending approvals
        are denied. There is no reconnect; a new session must be created.
        """
        if self.state.connection_state == ConnectionState.CLOSED:
            return
        self._set_connection(ConnectionState.CLOSED)
        self.state.close_reason = reason
        self.state.turn_state = TurnState.IDLE

        self._audio_buffer.clear()
        self._preroll.clear()
        if self.vad is not None:
            self.vad.reset()
        self.gate.deny_all()
        await self.transport.close()

        logger.info(f"[VOICE] Session {self.session_id} closed ({reason})")
        await self._emit({"type": "state", **self._state_summary()})

        if self.on_close is not None:
            result = self.on_close(self)
            if inspect.isawaitable(result):
                await result

    async def wait_for_pending(self) -> None:
        """Wait for tool calls that are waiting on approval."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ========================================================================
    # CLIENT INPUT
    # ========================================================================

    async def append_audio(self, frame: bytes) -> None:
        """
        Forward one PCM16 frame from the user's microphone.

        Raises:
            SessionClosedError: the session is not open
        """
        if not self.is_open:
            raise SessionClosedError(self.session_id)

        if self.vad is None:
            self._audio_buffer.append(frame)
            await self._send_audio(frame)
            return

        signal = self.vad.process(frame)
        if signal == SPEECH_STARTED:
            await self._set_turn(TurnState.USER_SPEAKING)
            await self._emit({"type": "speech", "event": SPEECH_STARTED, "startMs": self.vad.speech_start_ms})
            for padded, _ in self._preroll:
                self._audio_buffer.append(padded)
                await self._send_audio(padded)
            self._preroll.clear()

        if self.vad.speaking or signal == SPEECH_STOPPED:
            self._audio_buffer.append(frame)
            await self._send_audio(frame)
        else:
            self._remember_preroll(frame)

        if signal == SPEECH_STOPPED:
            self._audio_buffer.clear()
            await self._set_turn(TurnState.SERVER_PROCESSING)
            await self._send({"type": "input_audio_buffer.commit"})
            await self._send({"type": "response.create"})

    def approve(self, call_id: str) -> bool:
        return self.gate.resolve(call_id, True)

    def deny(self, call_id: str) -> bool:
        return self.gate.resolve(call_id, False)

    # ========================================================================
    # SERVER EVENTS
    # ========================================================================

    async def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type", "")

        if event_type == "input_audio_buffer.speech_started":
            await self._set_turn(TurnState.USER_SPEAKING)
        elif event_type == "input_audio_buffer.speech_stopped":
            await self._set_turn(TurnState.SERVER_PROCESSING)
        elif event_type == "input_audio_buffer.committed":
            self._audio_buffer.clear()
        elif event_type == "response.created":
            await self._set_turn(TurnState.SERVER_PROCESSING)
        elif event_type == "response.done":
            await self._set_turn(TurnState.IDLE)
        elif event_type == "conversation.item.input_audio_transcription.completed":
            await self._add_transcript("user", event.get("transcript", ""))
        elif event_type == "response.audio_transcript.done":
            await self._add_transcript("assistant", event.get("transcript", ""))
        elif event_type == "response.function_call_arguments.done":
            await self._on_function_call(
                event.get("call_id") or new_id("call_"), event.get("name", ""), event.get("arguments")
            )
        elif event_type == "error":
            logger.warning(f"[VOICE] Realtime service error: {event.get('error')}")
            await self._emit({"type": "error", "error": event.get("error")})

    async def _on_function_call(self, call_id: str, name: str, arguments: Any) -> None:
        if name == HANG_UP_TOOL["name"]:
            logger.info(f"[VOICE] Model ended session {self.session_id}")
            await self.close(reason="hang_up")
            return

        if self.state.immediate_execution:
            await self._handle_tool_call(call_id, name, arguments)
            return

        task = asyncio.create_task(self._handle_tool_call(call_id, name, arguments))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_tool_call(self, call_id: str, name: str, arguments: Any) -> None:
        record = ToolCallEvent(call_id=call_id, name=name, arguments=arguments)
        self.state.transcript.append(record)

        # Tool calls are handled one at a time, in arrival order
        async with self._call_lock:
            if not self.is_open:
                record.status = "denied"
                record.outcome = {"ok": False, "decision": ApprovalDecision.DENIED.value}
                logger.info(f"[VOICE] {name} not applied (session closed)")
                await self._finish_call(record, {"error": "The voice session was closed"})
                return

            try:
                if name not in self.capabilities:
                    raise UnknownCapabilityError(name)
                prepared = self.dispatcher.prepare(
                    StageTag.EXECUTE, ToolCallRequest(name=name, raw_arguments=arguments, call_id=call_id)
                )
            except DispatchError as e:
                logger.warning(f"[VOICE] Rejected {name}: {e.message}")
                record.status = "failed"
                record.outcome = {"ok": False, "error": {"code": e.error_code, "message": e.summary}}
                await self._finish_call(record, {"error": e.to_dict()})
                return

            if not self.state.immediate_execution:
                await self._emit({"type": "approvalRequest", "callId": call_id, "name": name,
                                  "arguments": prepared.arguments})
                decision = await self.gate.request(call_id)
                if decision != ApprovalDecision.APPROVED or not self.is_open:
                    record.status = "denied"
                    record.outcome = {"ok": False, "decision": decision.value}
                    logger.info(f"[VOICE] {name} not applied ({decision.value})")
                    await self._finish_call(record, {"error": f"The user did not approve this change ({decision.value})"})
                    return

            try:
                outcome = await asyncio.to_thread(self.dispatcher.execute, prepared, self.tool_context)
            except Exception as e:
                logger.error(f"[VOICE] {name} failed: {e}", exc_info=True)
                record.status = "failed"
                record.outcome = {"ok": False, "error": {"code": "INTERNAL_ERROR", "message": str(e)}}
                await self._finish_call(record, {"error": f"{type(e).__name__}: {e}"})
                return
            record.status = "dispatched" if outcome.ok else "failed"
            record.outcome = outcome.to_dict()
            await self._finish_call(record, None, outcome.to_model_text())

    async def _finish_call(self, record: ToolCallEvent, error: Optional[Dict[str, Any]],
                           output: Optional[str] = None) -> None:
        await self._emit(record.to_dict())
        if self.event_bus is not None:
            self.event_bus.publish(create_system_event(
                event_type="voice_tool_call",
                event_category="voice",
                source="voice_session",
                session_id=self.session_id,
                payload={"name": record.name, "status": record.status},
            ))

        if output is None:
            output = json.dumps(error, default=str)
        await self._send({
            "type": "conversation.item.create",
            "item": {"type": "function_call_output", "call_id": record.call_id, "output": output},
        })
        await self._send({"type": "response.create"})

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _session_update(self) -> Dict[str, Any]:
        tools = [
            self.dispatcher.registry.get(name).to_realtime_tool() for name in sorted(self.capabilities)
        ] + [HANG_UP_TOOL]
        session: Dict[str, Any] = {
            "tools": tools,
            "tool_choice": "auto",
            "turn_detection": self.config.turn_detection.to_wire(),
            "input_audio_transcription": {"model": "whisper-1"},
        }
        if self.instructions:
            session["instructions"] = self.instructions
        return {"type": "session.update", "session": session}

    def _remember_preroll(self, frame: bytes) -> None:
        self._preroll.append((frame, self.vad.frame_ms(frame)))
        kept = sum(ms for _, ms in self._preroll)
        while self._preroll and kept - self._preroll[0][1] >= self.vad.prefix_padding_ms:
            kept -= self._preroll.popleft()[1]

    async def _send_audio(self, frame: bytes) -> None:
        await self._send({"type": "input_audio_buffer.append", "audio": base64.b64encode(frame).decode("ascii")})

    async def _send(self, event: Dict[str, Any]) -> None:
        if not self.is_open:
            return
        try:
            await self.transport.send(event)
        except TransportError as e:
            logger.error(f"[VOICE] Send failed in {self.session_id}: {e.message}")
            await self.close(reason=f"transport_error: {e.message}")

    async def _add_transcript(self, role: str, text: str) -> None:
        entry = VoiceTranscript(role=role, text=text)
        self.state.transcript.append(entry)
        await self._emit(entry.to_dict())

    def _set_connection(self, new_state: ConnectionState) -> None:
        current = self.state.connection_state
        if new_state not in _CONNECTION_TRANSITIONS[current]:
            raise InvalidStateTransitionError("voice connection", current.value, new_state.value)
        self.state.connection_state = new_state
        self._publish_state()

    async def _set_turn(self, new_state: TurnState) -> None:
        if not self.is_open or self.state.turn_state == new_state:
            return
        logger.debug(f"[VOICE] Turn {self.state.turn_state.value} -> {new_state.value}")
        self.state.turn_state = new_state
        self._publish_state()
        await self._emit({"type": "state", **self._state_summary()})

    def _state_summary(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "connectionState": self.state.connection_state.value,
            "turnState": self.state.turn_state.value,
            "closeReason": self.state.close_reason,
        }

    def _publish_state(self) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(create_system_event(
            event_type="voice_state_changed",
            event_category="voice",
            source="voice_session",
            session_id=self.session_id,
            payload=self._state_summary(),
        ))

    async def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        result = self.on_event(event)
        if inspect.isawaitable(result):
            await result
