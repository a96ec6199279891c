"""
Stage Pipeline - plan -> gather -> execute -> verify orchestration

Each stage builds a scoped instruction, makes one or more model turns with
only that stage's capabilities bound, and routes the resulting tool calls
through the ToolDispatcher. The session object carries all state; the
LangGraph workflow only decides which stage runs next.
"""

import json
import queue
import re
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, ToolMessage

from taskboard_agent.config.agent_config import PipelineConfig
from taskboard_agent.core.dispatcher import ToolContext, ToolDispatcher
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.model_channel import ModelChannel, ModelTurn
from taskboard_agent.core.verifier import ResultVerifier
from taskboard_agent.core.workflow import PipelineState, WorkflowBuilder
from taskboard_agent.models.capability import ToolCallRequest, ToolOutcome
from taskboard_agent.models.enums import Stage, StageTag, TranscriptKind
from taskboard_agent.models.messages import StreamChunk, create_system_event
from taskboard_agent.models.session import AgentSession, TranscriptEntry
from taskboard_agent.models.task import new_id
from taskboard_agent.utils.exceptions import DispatchError, InvalidArgumentsError, TaskBoardError
from taskboard_agent.utils.logger import get_logger
from taskboard_agent.utils.prompt_builder import PromptBuilder
from taskboard_agent.utils.validation import parse_arguments

logger = get_logger(__name__)

# Structured output for the plan stage; never dispatched and never on the board
RECORD_TODO_LIST_TOOL = {
    "type": "function",
    "function": {
        "name": "record_todo_list",
        "description": "Record the ordered todo list for the request",
        "parameters": {
            "type": "object",
            "properties": {
                "todo_list": {"type": "array", "items": {"type": "string", "minLength": 1}},
            },
            "required": ["todo_list"],
            "additionalProperties": False,
        },
    },
}

_LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


def parse_todo_text(text: str) -> List[str]:
    """Fallback: read a bulleted or numbered list from free text."""
    return [m.group(1) for m in (_LIST_ITEM.match(line) for line in text.splitlines()) if m]


def serialize_transcript(entries: List[TranscriptEntry]) -> str:
    """Execution transcript as text for the verifier."""
    lines = []
    for entry in entries:
        payload = entry.payload
        if entry.kind == TranscriptKind.TEXT:
            lines.append(f"assistant: {payload.get('content', '')}")
        elif entry.kind == TranscriptKind.TOOL_CALL:
            lines.append(f"call {payload['name']}: {json.dumps(payload.get('arguments'), default=str)}")
        else:
            status = "ok" if payload.get("ok") else "failed"
            body = payload.get("result") if payload.get("ok") else payload.get("error")
            lines.append(f"result {payload['name']} ({status}): {json.dumps(body, default=str)}")
    return "\n".join(lines) if lines else "No actions were taken."


def _chunk(item: Any) -> StreamChunk:
    if isinstance(item, TranscriptEntry):
        return {"type": item.kind.value, "stage": item.stage.value if item.stage else None,
                "payload": item.payload}
    return item


class StagePipeline:
    """
    Orchestrates one AgentSession through the staged tool-calling flow.

    Args:
        dispatcher: Routes tool calls through the capability allowlist
        channel: Model channel used for every stage
        config: Turn limits, timeout and verify switch
        verifier: Result verifier (defaults to one on the same channel)
        event_bus: Receives stage progress events
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        channel: ModelChannel,
        config: Optional[PipelineConfig] = None,
        verifier: Optional[ResultVerifier] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.channel = channel
        self.config = config or PipelineConfig()
        self.verifier = verifier or ResultVerifier(channel, self.config.model_timeout)
        self.event_bus = event_bus
        self.app = WorkflowBuilder(self).compile()

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    def run(
        self,
        session: AgentSession,
        tool_context: ToolContext,
        context: Optional[str] = None,
        timeout: Optional[float] = None,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> AgentSession:
        """
        Run the whole pipeline to a terminal stage.

        A session that already carries a todo list skips the plan model call.
        Failures end up in ``session.error``; this method does not raise for them.
        """
        if tool_context.session_id is None:
            tool_context.session_id = session.session_id

        logger.info(f"[PIPELINE] Running session {session.session_id}")
        state: PipelineState = {
            "session": session,
            "tool_context": tool_context,
            "context": context,
            "timeout": timeout or self.config.model_timeout,
            "on_text": on_text,
        }
        self.app.invoke(state)
        logger.info(f"[PIPELINE] Session {session.session_id} finished in stage {session.stage.value}")
        return session

    def run_plan(self, session: AgentSession, tool_context: ToolContext,
                 timeout: Optional[float] = None) -> List[str]:
        """Plan stage only. Returns the todo list (empty on failure)."""
        state = self._state(session, tool_context, None, timeout, None)
        self._run_stage(state, Stage.PLAN, self._plan)
        return list(session.todo_list)

    def run_gather(self, session: AgentSession, tool_context: ToolContext, context: Optional[str] = None,
                   timeout: Optional[float] = None,
                   on_text: Optional[Callable[[str], None]] = None) -> Optional[ModelTurn]:
        """Gather stage only, for a session whose todo list is already set. Returns the last model turn."""
        state = self._state(session, tool_context, context, timeout, on_text)
        return self._run_stage(state, Stage.GATHER, self._gather)

    def run_execute(self, session: AgentSession, tool_context: ToolContext, context: Optional[str] = None,
                    timeout: Optional[float] = None,
                    on_text: Optional[Callable[[str], None]] = None) -> Tuple[Optional[ModelTurn], List[ToolOutcome]]:
        """Execute stage only; ``session.gathered_results`` holds the query results."""
        state = self._state(session, tool_context, context, timeout, on_text)
        result = self._run_stage(state, Stage.EXECUTE, self._execute)
        return result if result is not None else (None, [])

    def stream(self, target: Callable[..., Any], session: AgentSession, *args, **kwargs) -> Iterator[StreamChunk]:
        """
        Run ``target`` (``self.run`` or one of the ``run_*`` stage methods) on a
        worker thread and yield chunks as they happen.

        Yields text deltas, transcript entries and stage changes, then one
        final ``{"type": "stage"}`` chunk describing where the session ended.
        """
        chunks: "queue.Queue[Any]" = queue.Queue()
        done = object()
        failure: List[BaseException] = []

        previous_observer = session.observer
        session.observer = lambda _session, item: chunks.put(_chunk(item))
        if target != self.run_plan:
            kwargs["on_text"] = lambda delta: chunks.put({"type": "text", "delta": delta})

        def worker():
            try:
                target(session, *args, **kwargs)
            except BaseException as e:
                failure.append(e)
            finally:
                chunks.put(done)

        thread = threading.Thread(target=worker, name=f"stream-{session.session_id}", daemon=True)
        thread.start()
        try:
            while True:
                item = chunks.get()
                if item is done:
                    break
                yield item
        finally:
            thread.join()
            session.observer = previous_observer

        if failure:
            raise failure[0]
        yield {"type": "stage", "stage": session.stage.value, "error": session.error}

    # ========================================================================
    # GRAPH NODES
    # ========================================================================

    def _plan_node(self, state: PipelineState) -> PipelineState:
        self._run_stage(state, Stage.PLAN, self._plan)
        return {**state}

    def _gather_node(self, state: PipelineState) -> PipelineState:
        self._run_stage(state, Stage.GATHER, self._gather)
        return {**state}

    def _execute_node(self, state: PipelineState) -> PipelineState:
        self._run_stage(state, Stage.EXECUTE, self._execute)
        return {**state}

    def _verify_node(self, state: PipelineState) -> PipelineState:
        self._run_stage(state, Stage.VERIFY, self._verify)
        return {**state}

    def _complete_node(self, state: PipelineState) -> PipelineState:
        session = state["session"]
        session.advance(Stage.COMPLETED)
        logger.info(f"[PIPELINE] ✓ Session {session.session_id} completed")
        self._publish("session_completed", session, {
            "todo_list": session.todo_list,
            "verification": session.verification.to_dict() if session.verification else None,
        })
        return {**state}

    def _error_node(self, state: PipelineState) -> PipelineState:
        session = state["session"]
        logger.error(f"[PIPELINE] ✗ Session {session.session_id} failed: {session.error}")
        self._publish("session_failed", session, {"error": session.error}, severity="error")
        return {**state}

    def _run_stage(self, state: PipelineState, stage: Stage, body: Callable[[PipelineState], Any]) -> Any:
        """
        Run one stage body with the stage boundary rules applied.

        Cancellation is honoured here, before any model call of the stage.
        Every failure is converted into the session's absorbing error state.
        """
        session = state["session"]
        if session.is_terminal:
            logger.warning(f"[PIPELINE] Session {session.session_id} is {session.stage.value}; skipping {stage.value}")
            return None
        if session.cancel_requested:
            logger.info(f"[PIPELINE] Session {session.session_id} cancelled before {stage.value}")
            session.fail("Session cancelled", error_code="CANCELLED")
            return None

        logger.info(f"[PIPELINE] Stage {stage.value} for session {session.session_id}")
        self._publish("stage_started", session, {"stage": stage.value})
        try:
            return body(state)
        except TaskBoardError as e:
            logger.error(f"[PIPELINE] Stage {stage.value} failed: [{e.error_code}] {e.message}")
            session.fail(e.message, error_code=e.error_code)
        except Exception as e:
            logger.error(f"[PIPELINE] Unexpected error in stage {stage.value}: {e}", exc_info=True)
            session.fail(f"{type(e).__name__}: {e}", error_code="INTERNAL_ERROR")
        return None

    # ========================================================================
    # STAGES
    # ========================================================================

    def _plan(self, state: PipelineState) -> None:
        session = state["session"]
        if session.todo_list:
            logger.info(f"[PLAN] Using supplied todo list ({len(session.todo_list)} items)")
            return
        if not session.request:
            raise TaskBoardError("Nothing to plan: the request is empty", error_code="EMPTY_REQUEST")

        ctx = state["tool_context"]
        system, user = PromptBuilder.build_plan_prompt(session.request, ctx.board_context(), ctx.today)
        turn = self.channel.invoke(
            [SystemMessage(content=system), HumanMessage(content=user)],
            [RECORD_TODO_LIST_TOOL],
            timeout=state["timeout"],
            tool_choice="record_todo_list",
        )

        todo_list: List[str] = []
        call = next((c for c in turn.tool_calls if c.name == "record_todo_list"), None)
        if call is not None:
            try:
                items = parse_arguments("record_todo_list", call.raw_arguments).get("todo_list")
            except InvalidArgumentsError as e:
                logger.warning(f"[PLAN] Unreadable todo list, falling back to text: {e.message}")
                items = None
            if isinstance(items, list):
                todo_list = [str(i).strip() for i in items if str(i).strip()]
        if not todo_list and turn.text:
            todo_list = parse_todo_text(turn.text)
        if not todo_list:
            raise TaskBoardError("The planner produced an empty todo list", error_code="EMPTY_PLAN")

        session.todo_list = todo_list
        session.record(TranscriptKind.TEXT, {"role": "planner", "content": "\n".join(todo_list)})
        logger.info(f"[PLAN] {len(todo_list)} todo items")

    def _gather(self, state: PipelineState) -> Optional[ModelTurn]:
        session = state["session"]
        ctx = state["tool_context"]
        session.advance(Stage.GATHER)

        system, user = PromptBuilder.build_gather_prompt(session.todo_list, self._context(state))
        messages: List[BaseMessage] = [SystemMessage(content=system), HumanMessage(content=user)]
        tools = [c.to_tool_schema() for c in self.registry.list_by_stage(StageTag.GATHER)]

        turn = None
        for round_index in range(self.config.max_gather_rounds):
            turn = self._turn(state, messages, tools, "auto")
            if not turn.tool_calls:
                break
            logger.info(f"[GATHER] Round {round_index + 1}: {len(turn.tool_calls)} tool calls")
            for call in turn.tool_calls:
                outcome = self._dispatch(session, StageTag.GATHER, call, ctx)
                if outcome is None:
                    return turn
                session.gathered_results[call.name] = outcome.result if outcome.ok else {"error": outcome.error}
                messages.append(ToolMessage(content=outcome.to_model_text(), tool_call_id=call.call_id))
        return turn

    def _execute(self, state: PipelineState) -> Tuple[Optional[ModelTurn], List[ToolOutcome]]:
        session = state["session"]
        ctx = state["tool_context"]
        session.advance(Stage.EXECUTE)

        system, user = PromptBuilder.build_execute_prompt(
            session.todo_list, session.gathered_results, self._context(state)
        )
        messages: List[BaseMessage] = [SystemMessage(content=system), HumanMessage(content=user)]
        tools = [c.to_tool_schema() for c in self.registry.list_by_stage(StageTag.EXECUTE)]

        outcomes: List[ToolOutcome] = []
        turn = None
        for turn_index in range(self.config.max_execute_turns):
            turn = self._turn(state, messages, tools, "any" if turn_index == 0 else "auto")
            if not turn.tool_calls:
                break

            # Sequential, in emission order: later calls observe earlier effects
            failed = False
            for call in turn.tool_calls:
                outcome = self._dispatch(session, StageTag.EXECUTE, call, ctx)
                if outcome is None:
                    return turn, outcomes
                outcomes.append(outcome)
                failed = failed or not outcome.ok
                messages.append(ToolMessage(content=outcome.to_model_text(), tool_call_id=call.call_id))

            if not failed:
                break
            logger.info("[EXECUTE] A call failed; giving the model a chance to correct it")
        return turn, outcomes

    def _verify(self, state: PipelineState) -> None:
        session = state["session"]
        session.advance(Stage.VERIFY)
        results = serialize_transcript(session.transcript_for(Stage.EXECUTE))
        session.verification = self.verifier.verify(session.todo_list, results, timeout=state["timeout"])
        session.record(TranscriptKind.TEXT, {"role": "verifier", "content": session.verification.message,
                                             "verification": session.verification.to_dict()})

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _turn(self, state: PipelineState, messages: List[BaseMessage], tools: List[Dict[str, Any]],
              tool_choice: str) -> ModelTurn:
        """One model turn; the AI message is appended to ``messages``."""
        session = state["session"]
        turn = self.channel.invoke(messages, tools, timeout=state["timeout"],
                                   tool_choice=tool_choice, on_text=state.get("on_text"))
        if turn.text:
            session.record(TranscriptKind.TEXT, {"role": "assistant", "content": turn.text})

        # Tool messages must answer every call id
        if any(not c.call_id or not isinstance(c.raw_arguments, dict) for c in turn.tool_calls):
            for call in turn.tool_calls:
                call.call_id = call.call_id or new_id("call_")
            turn.message = None
        if turn.tool_calls:
            messages.append(turn.to_message())
        return turn

    def _dispatch(self, session: AgentSession, stage: StageTag, call: ToolCallRequest,
                  ctx: ToolContext) -> Optional[ToolOutcome]:
        """
        Dispatch one call and record it.

        Returns None when the session was aborted (unknown capability or
        stage violation); otherwise an outcome, failed ones included.
        """
        session.record(TranscriptKind.TOOL_CALL, call.to_dict())
        try:
            outcome = self.dispatcher.dispatch(stage, call, ctx)
        except DispatchError as e:
            session.record(TranscriptKind.TOOL_RESULT, {
                "name": call.name, "ok": False, "callId": call.call_id,
                "error": {"code": e.error_code, "message": e.summary},
            })
            if e.aborts_session:
                logger.error(f"[PIPELINE] Aborting session {session.session_id}: {e.message}")
                session.fail(e.message, error_code=e.error_code)
                return None
            logger.warning(f"[PIPELINE] {e.message}")
            # The model sees the full schema diff so it can correct itself
            return ToolOutcome(name=call.name, ok=False, error=e.to_dict(), call_id=call.call_id)

        record = outcome.to_dict()
        if not outcome.ok:
            record["error"] = {"code": outcome.error.get("error_code"), "message": outcome.error.get("message")}
        session.record(TranscriptKind.TOOL_RESULT, record)
        return outcome

    @staticmethod
    def _context(state: PipelineState) -> str:
        """Caller context plus the current board (which refreshes the #n references)."""
        ctx = state["tool_context"]
        parts = [state.get("context"), "Current board:\n" + ctx.board_context(), f"Today is {ctx.today}."]
        return "\n\n".join(p for p in parts if p)

    def _state(self, session, tool_context, context, timeout, on_text) -> PipelineState:
        if tool_context.session_id is None:
            tool_context.session_id = session.session_id
        return {
            "session": session,
            "tool_context": tool_context,
            "context": context,
            "timeout": timeout or self.config.model_timeout,
            "on_text": on_text,
        }

    def _publish(self, event_type: str, session: AgentSession, payload: Dict[str, Any],
                 severity: str = "info") -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(create_system_event(
            event_type=event_type,
            event_category="pipeline",
            source="stage_pipeline",
            session_id=session.session_id,
            payload=payload,
            severity=severity,
        ))
