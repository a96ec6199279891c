"""
Capability Registry - the allowlist of operations the model may call

Registration happens at process start; once frozen the registry is
read-only and the set of names is closed.
"""

import threading
from typing import Dict, List, Union

from taskboard_agent.models.capability import CapabilityDefinition
from taskboard_agent.models.enums import StageTag
from taskboard_agent.utils.exceptions import ConfigurationError, UnknownCapabilityError
from taskboard_agent.utils.validation import check_schema
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


class CapabilityRegistry:
    """
    Single source of truth for the capabilities the dispatcher accepts.

    The stage check is an explicit table (capability -> allowed stages)
    consulted once per dispatch.
    """

    def __init__(self):
        self._capabilities: Dict[str, CapabilityDefinition] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, definition: CapabilityDefinition) -> CapabilityDefinition:
        """
        Append a capability.

        Raises:
            ConfigurationError: registry is frozen, name is taken, handler or schema invalid
        """
        with self._lock:
            if self._frozen:
                raise ConfigurationError(
                    f"capabilities.{definition.name}",
                    "registry is frozen; capabilities can only be registered at startup"
                )
            if definition.name in self._capabilities:
                raise ConfigurationError(f"capabilities.{definition.name}", "duplicate capability name")
            if definition.handler is None:
                raise ConfigurationError(f"capabilities.{definition.name}", "no handler bound")
            check_schema(definition.name, definition.parameter_schema)
            self._capabilities[definition.name] = definition

        logger.debug(
            f"[REGISTRY] Registered {definition.name} "
            f"({', '.join(sorted(t.value for t in definition.stage_tags))})"
        )
        return definition

    def freeze(self) -> "CapabilityRegistry":
        with self._lock:
            self._frozen = True
        logger.info(f"[REGISTRY] Frozen with {len(self._capabilities)} capabilities")
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> CapabilityDefinition:
        try:
            return self._capabilities[name]
        except KeyError:
            raise UnknownCapabilityError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities

    def names(self) -> List[str]:
        return list(self._capabilities)

    def list_by_stage(self, stage: Union[str, StageTag]) -> List[CapabilityDefinition]:
        """Capabilities dispatchable in ``stage``, in registration order."""
        return [c for c in self._capabilities.values() if c.allows(stage)]

    def stage_table(self) -> Dict[str, List[str]]:
        """capability -> allowed stages"""
        return {
            name: sorted(t.value for t in c.stage_tags)
            for name, c in self._capabilities.items()
        }
