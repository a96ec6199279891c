"""
Capability module - Callable operations, tool-call requests and outcomes
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional, Union
import json

from .enums import StageTag


@dataclass(frozen=True)
class CapabilityDefinition:
    """
    A named, schema-validated operation the model may invoke.

    Attributes:
        name: Unique capability name (the tool name shown to the model)
        description: Natural-language description shown to the model
        parameter_schema: JSON Schema object for the arguments
        stage_tags: Stages in which dispatching this capability is allowed
        handler: Callable ``handler(args, context)`` bound at registration
    """
    name: str
    description: str
    parameter_schema: Dict[str, Any]
    stage_tags: FrozenSet[StageTag]
    handler: Optional[Callable[[Dict[str, Any], Any], Any]] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Capability name cannot be empty")
        if not self.stage_tags:
            raise ValueError(f"Capability '{self.name}' needs at least one stage tag")
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "stage_tags", frozenset(StageTag(t) for t in self.stage_tags))

    def allows(self, stage: Union[str, StageTag]) -> bool:
        try:
            return StageTag(stage) in self.stage_tags
        except ValueError:
            return False

    def to_catalogue_entry(self) -> Dict[str, Any]:
        """``{name, description, parameterSchema}`` tuple exposed to the model channel."""
        return {
            "name": self.name,
            "description": self.description,
            "parameterSchema": self.parameter_schema,
        }

    def to_tool_schema(self) -> Dict[str, Any]:
        """Function-calling tool definition accepted by ``bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            },
        }

    def to_realtime_tool(self) -> Dict[str, Any]:
        """Tool definition in the realtime session format (flat, no ``function`` wrapper)."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_schema,
        }


@dataclass
class ToolCallRequest:
    """
    A model-issued request to invoke a capability.

    ``raw_arguments`` is either the JSON string the model produced or an
    already-decoded object.
    """
    name: str
    raw_arguments: Union[str, Dict[str, Any], None] = None
    call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": self.raw_arguments, "callId": self.call_id}


@dataclass
class ToolOutcome:
    """
    Result of a dispatched tool call.

    A handler's domain error is carried here (``ok`` False) rather than raised.
    """
    name: str
    result: Any = None
    ok: bool = True
    error: Optional[Dict[str, Any]] = None
    call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "ok": self.ok, "result": self.result}
        if self.error:
            data["error"] = self.error
        if self.call_id:
            data["callId"] = self.call_id
        return data

    def to_model_text(self) -> str:
        """Serialized form fed back to the model as a tool message."""
        if self.ok:
            return json.dumps({"result": self.result}, default=str)
        return json.dumps({"error": self.error}, default=str)
