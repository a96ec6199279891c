"""
Realtime transport - credentials bootstrap and the duplex event channel

``RealtimeSessionClient`` asks the realtime service for short-lived
credentials (what the browser uses to connect directly).
``WebSocketRealtimeTransport`` is the server-side duplex channel a
VoiceSession speaks the realtime event protocol over.
"""

import json
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from taskboard_agent.config.agent_config import VALID_VOICES, TurnDetectionConfig, VoiceConfig
from taskboard_agent.core.registry import CapabilityRegistry
from taskboard_agent.models.capability import CapabilityDefinition
from taskboard_agent.models.enums import StageTag
from taskboard_agent.models.messages import VoiceBootstrapRequest, VoiceBootstrapResponse
from taskboard_agent.utils.exceptions import (
    ConfigurationError,
    InvalidArgumentsError,
    ModelTimeoutError,
    StageViolationError,
    TransportError,
)
from taskboard_agent.utils.logger import get_logger
from taskboard_agent.utils.prompt_builder import PromptBuilder

logger = get_logger(__name__)

# Session control handled by the voice session itself; never reaches the dispatcher
HANG_UP_TOOL = {
    "type": "function",
    "name": "hang_up",
    "description": "End the voice conversation when the user is done or says goodbye",
    "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
}


class RealtimeTransport(Protocol):
    """Duplex JSON event channel to the realtime service."""

    async def connect(self) -> None:
        ...

    async def send(self, event: Dict[str, Any]) -> None:
        ...

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next server event, or None once the channel closed normally."""
        ...

    async def close(self) -> None:
        ...


class WebSocketRealtimeTransport:
    """RealtimeTransport over a websocket."""

    def __init__(self, url: str, api_key: str, model: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.headers = headers or {}
        self._websocket = None
        self._closed = False

    async def connect(self) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}", "OpenAI-Beta": "realtime=v1", **self.headers}
        url = f"{self.url}?model={self.model}"
        try:
            self._websocket = await ws_connect(url, additional_headers=headers)
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Failed to connect to realtime service: {e}", original_error=e) from e
        logger.debug(f"[VOICE] Connected to {url}")

    async def send(self, event: Dict[str, Any]) -> None:
        if self._closed or self._websocket is None:
            raise TransportError("Realtime connection closed")
        try:
            await self._websocket.send(json.dumps(event))
        except WebSocketException as e:
            raise TransportError(f"Failed to send realtime event: {e}", original_error=e) from e

    async def receive(self) -> Optional[Dict[str, Any]]:
        if self._closed or self._websocket is None:
            return None
        try:
            raw = await self._websocket.recv()
        except ConnectionClosedOK:
            return None
        except WebSocketException as e:
            raise TransportError(f"Realtime connection lost: {e}", original_error=e) from e
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON from realtime service: {e}", original_error=e) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except WebSocketException as e:
                logger.warning(f"[VOICE] Error closing websocket: {e}")
            finally:
                self._websocket = None


class RealtimeSessionClient:
    """Creates realtime sessions (ephemeral client credentials) over HTTP."""

    def __init__(self, config: Optional[VoiceConfig] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or VoiceConfig()
        self.timeout = timeout
        self._transport = transport

    async def create_session(
        self,
        instructions: str,
        tools: List[Dict[str, Any]],
        voice: str,
        turn_detection: TurnDetectionConfig,
    ) -> Dict[str, Any]:
        """
        POST ``/realtime/sessions``.

        Raises:
            ConfigurationError: no API key configured
            ModelTimeoutError: the service did not answer in time
            TransportError: network failure or non-2xx response
        """
        if not self.config.api_key:
            raise ConfigurationError("voice.api_key", "OPENAI_API_KEY is not set; voice sessions are unavailable")

        url = f"{self.config.api_base_url.rstrip('/')}/realtime/sessions"
        payload = {
            "model": self.config.model,
            "voice": voice,
            "instructions": instructions,
            "tools": tools,
            "tool_choice": "auto",
            "turn_detection": turn_detection.to_wire(),
            "input_audio_transcription": {"model": "whisper-1"},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise ModelTimeoutError("Realtime session bootstrap", self.timeout) from None
        except httpx.HTTPError as e:
            raise TransportError(f"Realtime session request failed: {e}", original_error=e) from e

        if resp.status_code >= 300:
            logger.error(f"[VOICE] Realtime session bootstrap failed: {resp.status_code} {resp.text[:300]}")
            raise TransportError(f"Failed to create realtime session (HTTP {resp.status_code})")
        return resp.json()


def select_voice_capabilities(registry: CapabilityRegistry, names: List[str]) -> List[CapabilityDefinition]:
    """
    Capabilities a voice session may call.

    Voice sessions always dispatch with stage execute, so every selected
    name must be execute-tagged. An empty selection means all of them.

    Raises:
        UnknownCapabilityError, StageViolationError
    """
    if not names:
        return registry.list_by_stage(StageTag.EXECUTE)
    selected = []
    for name in dict.fromkeys(names):
        if name == HANG_UP_TOOL["name"]:
            continue
        capability = registry.get(name)
        if not capability.allows(StageTag.EXECUTE):
            raise StageViolationError(name, StageTag.EXECUTE.value, [t.value for t in capability.stage_tags])
        selected.append(capability)
    return selected


def resolve_turn_detection(base: TurnDetectionConfig, overrides: Optional[Dict[str, Any]]) -> TurnDetectionConfig:
    """Merge request thresholds over the configured ones (camelCase or snake_case keys)."""
    if not overrides:
        return base
    aliases = {"prefixPaddingMs": "prefix_padding_ms", "silenceDurationMs": "silence_duration_ms"}
    changes = {aliases.get(k, k): v for k, v in overrides.items() if v is not None}
    unknown = sorted(set(changes) - {"mode", "threshold", "prefix_padding_ms", "silence_duration_ms"})
    if unknown:
        raise InvalidArgumentsError("voice_bootstrap", [
            {"path": f"turnDetection.{k}", "message": f"unknown setting '{k}'", "validator": "additionalProperties"}
            for k in unknown
        ])
    try:
        return replace(base, **changes)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentsError("voice_bootstrap", [
            {"path": "turnDetection", "message": str(e), "validator": "range"}
        ]) from e


async def bootstrap_voice_session(
    client: RealtimeSessionClient,
    registry: CapabilityRegistry,
    request: VoiceBootstrapRequest,
    board_context: Optional[str] = None,
    today: Optional[str] = None,
    immediate_execution: Optional[bool] = None,
) -> VoiceBootstrapResponse:
    """
    Validate a bootstrap request and return credentials for the realtime service.
    """
    voice = request.get("voice") or client.config.voice
    if voice not in VALID_VOICES:
        raise InvalidArgumentsError("voice_bootstrap", [
            {"path": "voice", "message": f"'{voice}' is not one of {list(VALID_VOICES)}", "validator": "enum"}
        ])

    capabilities = select_voice_capabilities(registry, request.get("selectedCapabilities") or [])
    tools = [c.to_realtime_tool() for c in capabilities] + [HANG_UP_TOOL]
    turn_detection = resolve_turn_detection(client.config.turn_detection, request.get("turnDetection"))
    immediate = client.config.immediate_execution if immediate_execution is None else immediate_execution
    instructions = PromptBuilder.build_voice_instructions(
        request.get("instructions"), board_context, today, immediate
    )

    data = await client.create_session(instructions, tools, voice, turn_detection)
    secret = data.get("client_secret") or {}
    logger.info(f"[VOICE] Bootstrapped realtime session with {len(capabilities)} capabilities")
    return {
        "sessionId": data.get("id", ""),
        "clientSecret": secret.get("value", ""),
        "expiresAt": secret.get("expires_at"),
        "model": data.get("model", client.config.model),
        "url": client.config.ws_url,
    }
