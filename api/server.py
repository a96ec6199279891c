"""
Task Board Agent API Server

FastAPI-based server providing:
- Stage endpoints (plan, gather, execute, check-results) and full runs, with NDJSON streaming
- Task board CRUD and the drag-and-drop protocol
- Realtime voice bootstrap and a WebSocket relay for server-side voice sessions
"""

import asyncio
import base64
import binascii
import functools
import json
import threading
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

from taskboard_agent import __version__
from taskboard_agent.config import AgentConfig
from taskboard_agent.core.board import TaskBoardStore, to_column
from taskboard_agent.core.capabilities import build_default_registry
from taskboard_agent.core.dispatcher import ToolContext, ToolDispatcher
from taskboard_agent.core.drag import DragController
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.model_channel import LangChainModelChannel, ModelChannel
from taskboard_agent.core.persistence import InMemoryTaskRepository, SessionVerifier, StaticSessionVerifier
from taskboard_agent.core.pipeline import StagePipeline
from taskboard_agent.core.realtime import (
    RealtimeSessionClient,
    WebSocketRealtimeTransport,
    bootstrap_voice_session,
    select_voice_capabilities,
)
from taskboard_agent.core.registry import CapabilityRegistry
from taskboard_agent.core.sessions import SessionArena
from taskboard_agent.core.voice import VoiceSession
from taskboard_agent.models.enums import Stage
from taskboard_agent.models.session import AgentSession
from taskboard_agent.models.task import CalendarItem, Task
from taskboard_agent.utils.exceptions import (
    InvalidArgumentsError,
    InvalidColumnError,
    ModelTimeoutError,
    NotFoundError,
    StageViolationError,
    TaskBoardError,
    TransportError,
    UnauthorizedError,
    UnknownCapabilityError,
)
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)

# Checked in order; the first matching class decides the status
STATUS_BY_ERROR = (
    (UnauthorizedError, 401),
    (NotFoundError, 404),
    (InvalidColumnError, 409),
    (InvalidArgumentsError, 422),
    (UnknownCapabilityError, 400),
    (StageViolationError, 400),
    (ModelTimeoutError, 504),
    (TransportError, 502),
)

STATUS_BY_CODE = {
    "UNAUTHORIZED": 401,
    "UNKNOWN_CAPABILITY": 400,
    "STAGE_VIOLATION": 400,
    "EMPTY_REQUEST": 422,
    "EMPTY_PLAN": 422,
    "CANCELLED": 409,
    "TRANSPORT_ERROR": 502,
    "TIMEOUT": 504,
}


def status_for(error: TaskBoardError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class PlanBody(BaseModel):
    request: str = Field(min_length=1)
    context: Optional[str] = None


class GatherBody(BaseModel):
    todoList: List[str] = Field(min_length=1)
    context: Optional[str] = None


class ExecuteBody(BaseModel):
    todoList: List[str] = Field(min_length=1)
    queryResults: Dict[str, Any] = {}
    context: Optional[str] = None


class CheckResultsBody(BaseModel):
    todoList: List[str]
    results: str


class RunBody(BaseModel):
    request: Optional[str] = None
    todoList: Optional[List[str]] = None
    context: Optional[str] = None


class TaskBody(BaseModel):
    id: Optional[str] = None
    title: str = Field(min_length=1)
    columnId: str = "backlog"
    description: Optional[str] = None
    subtasks: List[Dict[str, Any]] = []
    tags: List[str] = []
    calendarItem: Optional[Dict[str, Any]] = None
    durationMinutes: Optional[int] = Field(default=None, ge=1)
    urgency: Optional[str] = None
    importance: Optional[str] = None
    completed: bool = False
    order: Optional[int] = None


class MoveBody(BaseModel):
    taskId: str
    toColumnId: str
    fromColumnId: Optional[str] = None
    targetIndex: Optional[int] = Field(default=None, ge=0)
    calendarItem: Optional[Dict[str, Any]] = None


class DragBeginBody(BaseModel):
    taskId: str


class DragPreviewBody(BaseModel):
    columnId: str
    index: Optional[int] = Field(default=None, ge=0)


class DragReleaseBody(BaseModel):
    columnId: Optional[str] = None
    index: Optional[int] = Field(default=None, ge=0)
    calendarItem: Optional[Dict[str, Any]] = None
    slotStart: Optional[str] = None


class VoiceBootstrapBody(BaseModel):
    instructions: Optional[str] = None
    selectedCapabilities: List[str] = []
    voice: Optional[str] = None
    turnDetection: Optional[Dict[str, Any]] = None
    immediateExecution: Optional[bool] = None


def _calendar_item(data: Optional[Dict[str, Any]]) -> Optional[CalendarItem]:
    if not data:
        return None
    try:
        return CalendarItem.from_dict(data)
    except KeyError as e:
        raise InvalidArgumentsError("calendarItem", [
            {"path": f"calendarItem.{e.args[0]}", "message": f"'{e.args[0]}' is a required property",
             "validator": "required"}
        ]) from None


# ============================================================================
# SERVICE STATE
# ============================================================================

class AgentService:
    """
    Process-wide state shared by the routes: one board per user, the session
    arena, and the lazily built model channel and pipeline.
    """

    def __init__(
        self,
        config: AgentConfig,
        channel: Optional[ModelChannel] = None,
        repository_factory: Optional[Callable[[str], Any]] = None,
        session_verifier: Optional[SessionVerifier] = None,
        registry: Optional[CapabilityRegistry] = None,
        realtime_client: Optional[RealtimeSessionClient] = None,
        transport_factory: Optional[Callable[[], Any]] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.registry = registry or build_default_registry()
        self.event_bus = event_bus or EventBus()
        self.dispatcher = ToolDispatcher(self.registry, self.event_bus)
        self.session_verifier = session_verifier or StaticSessionVerifier(config.board.session_tokens)
        self.repository_factory = repository_factory or InMemoryTaskRepository
        self.realtime_client = realtime_client or RealtimeSessionClient(config.voice)
        self.transport_factory = transport_factory or (lambda: WebSocketRealtimeTransport(
            config.voice.ws_url, config.voice.api_key or "", config.voice.model
        ))
        self.arena = SessionArena()

        self._channel = channel
        self._pipeline: Optional[StagePipeline] = None
        self._boards: Dict[str, TaskBoardStore] = {}
        self._drags: Dict[str, DragController] = {}
        self._lock = threading.Lock()

    @property
    def pipeline(self) -> StagePipeline:
        with self._lock:
            if self._pipeline is None:
                if self._channel is None:
                    self._channel = LangChainModelChannel(self.config.llm)
                self._pipeline = StagePipeline(
                    self.dispatcher, self._channel, self.config.pipeline, event_bus=self.event_bus
                )
            return self._pipeline

    def board(self, user_id: str) -> TaskBoardStore:
        with self._lock:
            store = self._boards.get(user_id)
            if store is None:
                repository = self.repository_factory(user_id)
                store = TaskBoardStore(
                    repository=repository,
                    event_bus=self.event_bus,
                    default_duration_minutes=self.config.board.default_duration_minutes,
                )
                existing = repository.all() if hasattr(repository, "all") else []
                if existing:
                    store.load(existing)
                self._boards[user_id] = store
                self._drags[user_id] = DragController(store)
                logger.info(f"[API] Board created for user {user_id} ({len(existing)} tasks)")
            return store

    def drags(self, user_id: str) -> DragController:
        self.board(user_id)
        return self._drags[user_id]

    def tool_context(self, user_id: str, session_id: Optional[str] = None) -> ToolContext:
        return ToolContext(board=self.board(user_id), today=date.today().isoformat(), session_id=session_id)

    def start_background_run(self, user_id: str, todo_list: List[str], context: Optional[str] = None) -> AgentSession:
        """Run a full pipeline for ``todo_list`` on a worker thread."""
        session = self.arena.open(user_id=user_id, todo_list=todo_list)
        ctx = self.tool_context(user_id, session.session_id)
        threading.Thread(
            target=self.pipeline.run, args=(session, ctx, context),
            name=f"run-{session.session_id}", daemon=True,
        ).start()
        logger.info(f"[API] Started background run {session.session_id} with {len(todo_list)} items")
        return session


async def _in_thread(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def _ndjson(chunks: Iterator[Dict[str, Any]]) -> StreamingResponse:
    lines = (json.dumps(chunk, default=str) + "\n" for chunk in chunks)
    return StreamingResponse(lines, media_type="application/x-ndjson")


def _session_failure(session: AgentSession) -> Optional[JSONResponse]:
    if session.stage != Stage.ERROR:
        return None
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(session.error_code or "", 500),
        content={"error": session.error, "code": session.error_code, "sessionId": session.session_id},
    )


def _token(headers, cookies, query_token: Optional[str] = None) -> Optional[str]:
    auth = headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return cookies.get("session") or query_token


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    config: Optional[AgentConfig] = None,
    channel: Optional[ModelChannel] = None,
    repository_factory: Optional[Callable[[str], Any]] = None,
    session_verifier: Optional[SessionVerifier] = None,
    registry: Optional[CapabilityRegistry] = None,
    realtime_client: Optional[RealtimeSessionClient] = None,
    transport_factory: Optional[Callable[[], Any]] = None,
) -> FastAPI:
    """Build the API application. Without a config, settings come from the environment."""
    config = config or AgentConfig.from_env(prefix="AGENT_")
    service = AgentService(
        config,
        channel=channel,
        repository_factory=repository_factory,
        session_verifier=session_verifier,
        registry=registry,
        realtime_client=realtime_client,
        transport_factory=transport_factory,
    )

    app = FastAPI(
        title="Task Board Agent",
        description="Staged tool-calling agent for a personal task board",
        version=__version__,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TaskBoardError)
    async def handle_taskboard_error(request: Request, exc: TaskBoardError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: [{exc.error_code}] {exc.message}")
        else:
            logger.info(f"[API] {request.method} {request.url.path} -> {status} {exc.error_code}")
        return JSONResponse(status_code=status, content={"error": exc.summary, "code": exc.error_code})

    def current_user(request: Request) -> str:
        return service.session_verifier.verify(_token(request.headers, request.cookies))

    # ------------------------------------------------------------------------
    # AGENT
    # ------------------------------------------------------------------------

    @app.post("/api/agent/plan")
    async def plan(body: PlanBody, user_id: str = Depends(current_user)):
        pipeline = service.pipeline
        session = service.arena.open(request=body.request, user_id=user_id)
        ctx = service.tool_context(user_id, session.session_id)
        todo_list = await _in_thread(pipeline.run_plan, session, ctx)
        return _session_failure(session) or {"todoList": todo_list, "sessionId": session.session_id}

    @app.post("/api/agent/gather")
    async def gather(body: GatherBody, stream: bool = Query(False), user_id: str = Depends(current_user)):
        pipeline = service.pipeline
        session = service.arena.open(user_id=user_id, todo_list=body.todoList)
        ctx = service.tool_context(user_id, session.session_id)
        if stream:
            return _ndjson(pipeline.stream(pipeline.run_gather, session, ctx, body.context))

        turn = await _in_thread(pipeline.run_gather, session, ctx, body.context)
        return _session_failure(session) or {
            "message": turn.to_dict() if turn else None,
            "queryResults": session.gathered_results,
            "sessionId": session.session_id,
        }

    @app.post("/api/agent/execute")
    async def execute(body: ExecuteBody, stream: bool = Query(False), user_id: str = Depends(current_user)):
        pipeline = service.pipeline
        session = service.arena.open(user_id=user_id, todo_list=body.todoList)
        session.gathered_results = dict(body.queryResults)
        ctx = service.tool_context(user_id, session.session_id)
        if stream:
            return _ndjson(pipeline.stream(pipeline.run_execute, session, ctx, body.context))

        turn, outcomes = await _in_thread(pipeline.run_execute, session, ctx, body.context)
        return _session_failure(session) or {
            "message": turn.to_dict() if turn else None,
            "outcomes": [o.to_dict() for o in outcomes],
            "sessionId": session.session_id,
        }

    @app.post("/api/agent/check-results")
    async def check_results(body: CheckResultsBody, user_id: str = Depends(current_user)):
        report = await _in_thread(service.pipeline.verifier.verify, body.todoList, body.results)
        return report.to_dict()

    @app.post("/api/agent/run")
    async def run(body: RunBody, stream: bool = Query(False), user_id: str = Depends(current_user)):
        if not body.request and not body.todoList:
            raise InvalidArgumentsError("run", [
                {"path": "request", "message": "request or todoList is required", "validator": "required"}
            ])
        pipeline = service.pipeline
        session = service.arena.open(request=body.request, user_id=user_id, todo_list=body.todoList)
        ctx = service.tool_context(user_id, session.session_id)
        if stream:
            return _ndjson(pipeline.stream(pipeline.run, session, ctx, body.context))

        await _in_thread(pipeline.run, session, ctx, body.context)
        return session.to_dict()

    @app.get("/api/agent/sessions/{session_id}")
    def get_session(session_id: str, user_id: str = Depends(current_user)):
        return service.arena.get(session_id, user_id).to_dict()

    @app.post("/api/agent/sessions/{session_id}/cancel")
    def cancel_session(session_id: str, user_id: str = Depends(current_user)):
        session = service.arena.cancel(session_id, user_id)
        return {"sessionId": session_id, "cancelRequested": True, "stage": session.stage.value}

    # ------------------------------------------------------------------------
    # BOARD
    # ------------------------------------------------------------------------

    @app.get("/api/board")
    def get_board(user_id: str = Depends(current_user)):
        return service.board(user_id).snapshot().to_dict()

    @app.put("/api/board/tasks")
    def upsert_task(body: TaskBody, user_id: str = Depends(current_user)):
        store = service.board(user_id)
        data = body.model_dump()
        column = to_column(body.columnId)
        if body.order is None:
            data["order"] = (
                store.get_task(body.id).order
                if body.id and store.has_task(body.id) and store.column_of(body.id) == column
                else store.next_order(column)
            )
        data["columnId"] = column.value
        task = Task.from_dict(data)
        snapshot = store.upsert_task(task)
        return {"task": store.get_task(task.id).to_dict(), "board": snapshot.to_dict()}

    @app.delete("/api/board/tasks/{task_id}")
    def delete_task(task_id: str, user_id: str = Depends(current_user)):
        return service.board(user_id).remove_task(task_id).to_dict()

    @app.post("/api/board/tasks/move")
    def move_task(body: MoveBody, user_id: str = Depends(current_user)):
        store = service.board(user_id)
        source = body.fromColumnId or store.column_of(body.taskId)
        snapshot = store.move_task(
            body.taskId, source, body.toColumnId, body.targetIndex, calendar_item=_calendar_item(body.calendarItem)
        )
        return snapshot.to_dict()

    @app.post("/api/board/tasks/{task_id}/subtasks/{subtask_id}/complete")
    def complete_subtask(task_id: str, subtask_id: str, user_id: str = Depends(current_user)):
        store = service.board(user_id)
        store.mark_subtask_completed(task_id, subtask_id)
        return store.get_task(task_id).to_dict()

    @app.post("/api/board/drags")
    def begin_drag(body: DragBeginBody, user_id: str = Depends(current_user)):
        return service.drags(user_id).begin(body.taskId).to_dict()

    @app.post("/api/board/drags/{drag_id}/preview")
    def preview_drag(drag_id: str, body: DragPreviewBody, user_id: str = Depends(current_user)):
        drags = service.drags(user_id)
        projection = drags.preview(drag_id, body.columnId, body.index)
        return {"drag": drags.get(drag_id).to_dict(), "board": projection.to_dict()}

    @app.post("/api/board/drags/{drag_id}/release")
    def release_drag(drag_id: str, body: DragReleaseBody, user_id: str = Depends(current_user)):
        result = service.drags(user_id).release(
            drag_id, body.columnId, body.index,
            calendar_item=_calendar_item(body.calendarItem), slot_start=body.slotStart,
        )
        return result.to_dict()

    @app.delete("/api/board/drags/{drag_id}")
    def cancel_drag(drag_id: str, user_id: str = Depends(current_user)):
        service.drags(user_id).cancel(drag_id)
        return {"dragId": drag_id, "cancelled": True}

    # ------------------------------------------------------------------------
    # VOICE
    # ------------------------------------------------------------------------

    @app.post("/api/realtime-token")
    async def realtime_token(body: VoiceBootstrapBody, user_id: str = Depends(current_user)):
        ctx = service.tool_context(user_id)
        return await bootstrap_voice_session(
            service.realtime_client,
            service.registry,
            body.model_dump(exclude={"immediateExecution"}),
            board_context=ctx.board_context(),
            today=ctx.today,
            immediate_execution=body.immediateExecution,
        )

    @app.websocket("/ws/voice")
    async def voice_relay(websocket: WebSocket, token: Optional[str] = None):
        try:
            user_id = service.session_verifier.verify(_token(websocket.headers, websocket.cookies, token))
        except UnauthorizedError:
            await websocket.close(code=4401)
            return
        await websocket.accept()
        logger.info(f"[API] Voice relay connected for {user_id}")

        voice: Optional[VoiceSession] = None
        runner: Optional[asyncio.Task] = None

        async def send(event: Dict[str, Any]) -> None:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_json(event)

        async def on_close(session: VoiceSession) -> None:
            service.arena.remove_voice(session.session_id)
            plan = list(session.tool_context.plan)
            if plan:
                run_session = service.start_background_run(user_id, plan)
                await send({"type": "planStarted", "sessionId": run_session.session_id, "todoList": plan})

        try:
            while True:
                message = await websocket.receive_json()
                kind = message.get("type")
                try:
                    if kind == "start":
                        if voice is not None and voice.is_open:
                            await send({"type": "error", "error": "A voice session is already open"})
                            continue
                        capabilities = select_voice_capabilities(
                            service.registry, message.get("capabilities") or []
                        )
                        voice = VoiceSession(
                            service.transport_factory(),
                            service.dispatcher,
                            service.tool_context(user_id),
                            capabilities=[c.name for c in capabilities],
                            config=service.config.voice,
                            immediate_execution=message.get("immediateExecution"),
                            user_id=user_id,
                            instructions=message.get("instructions"),
                            on_event=send,
                            on_close=on_close,
                            event_bus=service.event_bus,
                        )
                        service.arena.add_voice(voice)
                        await voice.open()
                        runner = asyncio.create_task(voice.run())
                    elif voice is None:
                        await send({"type": "error", "error": "No voice session; send 'start' first"})
                    elif kind == "audio":
                        await voice.append_audio(base64.b64decode(message.get("audio", ""), validate=True))
                    elif kind in ("approve", "deny"):
                        call_id = message.get("callId", "")
                        resolved = voice.approve(call_id) if kind == "approve" else voice.deny(call_id)
                        if not resolved:
                            await send({"type": "error", "error": f"No pending approval for '{call_id}'"})
                    elif kind == "close":
                        await voice.close(reason="client_closed")
                    else:
                        await send({"type": "error", "error": f"Unknown message type '{kind}'"})
                except TaskBoardError as e:
                    await send({"type": "error", "error": e.summary, "code": e.error_code})
                except binascii.Error:
                    await send({"type": "error", "error": "audio must be base64-encoded PCM16"})
        except WebSocketDisconnect:
            logger.info(f"[API] Voice relay disconnected for {user_id}")
        finally:
            if voice is not None:
                await voice.close(reason="client_disconnected")
            if runner is not None:
                await asyncio.gather(runner, return_exceptions=True)

    # ------------------------------------------------------------------------
    # HEALTH
    # ------------------------------------------------------------------------

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "version": __version__,
            "capabilities": service.registry.stage_table(),
        }

    return app
