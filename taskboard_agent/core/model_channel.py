"""
Model channel - one model turn in, text plus tool calls out

The pipeline and the verifier only talk to the ``ModelChannel`` protocol.
``LangChainModelChannel`` adapts a LangChain chat model to it: it binds the
stage's capabilities as tools, enforces the caller's timeout and maps every
failure to TransportError or ModelTimeoutError.
"""

import concurrent.futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage

from taskboard_agent.config.agent_config import LLMConfig
from taskboard_agent.models.capability import ToolCallRequest
from taskboard_agent.utils.exceptions import (
    ConfigurationError,
    MissingDependencyError,
    ModelTimeoutError,
    TaskBoardError,
    TransportError,
)
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


def content_text(content: Any) -> str:
    """Plain text of a message content (string or list of content blocks)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


@dataclass
class ModelTurn:
    """One complete model response."""
    text: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    message: Optional[BaseMessage] = None

    def to_message(self) -> BaseMessage:
        """AIMessage to append to the conversation history."""
        if self.message is not None:
            return self.message
        return AIMessage(
            content=self.text,
            tool_calls=[
                {"name": c.name, "args": c.raw_arguments if isinstance(c.raw_arguments, dict) else {},
                 "id": c.call_id}
                for c in self.tool_calls
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.text, "toolCalls": [c.to_dict() for c in self.tool_calls]}


class ModelChannel(Protocol):
    """
    stream model output -> text and tool-call chunks

    tool_choice: "auto", "any" (must call some tool) or a tool name.
    """

    def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[Dict[str, Any]],
        timeout: float,
        tool_choice: str = "auto",
        on_text: Optional[Callable[[str], None]] = None,
    ) -> ModelTurn:
        ...


def turn_from_message(message: Any) -> ModelTurn:
    """
    Convert a LangChain AI message into a ModelTurn.

    Raises:
        TransportError: the response is not an AI message
    """
    if not isinstance(message, AIMessage):
        raise TransportError(f"Malformed model response: expected AIMessage, got {type(message).__name__}")

    calls = [
        ToolCallRequest(name=c["name"], raw_arguments=c.get("args") or {}, call_id=c.get("id"))
        for c in message.tool_calls
    ]
    # Unparseable arguments reach the dispatcher as raw text and fail validation there
    calls.extend(
        ToolCallRequest(name=c.get("name") or "", raw_arguments=c.get("args"), call_id=c.get("id"))
        for c in getattr(message, "invalid_tool_calls", None) or []
    )
    return ModelTurn(text=content_text(message.content), tool_calls=calls, message=message)


class LangChainModelChannel:
    """
    ModelChannel backed by a LangChain chat model.

    Args:
        llm_config: Provider and model settings
        llm: Pre-built chat model (skips provider initialization)
        max_workers: Threads used to enforce call timeouts
    """

    def __init__(self, llm_config: Optional[LLMConfig] = None, llm: Any = None, max_workers: int = 4):
        self.config = llm_config or LLMConfig()
        self.llm = llm if llm is not None else self._initialize_llm()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="model-channel"
        )

    def _initialize_llm(self):
        """
        Initialize LLM based on provider configuration.

        Returns:
            Initialized LLM instance
        """
        provider = self.config.provider.lower()
        api_key = self.config.require_api_key()

        kwargs = {"model": self.config.model_name, "temperature": self.config.temperature,
                  "api_key": api_key, "timeout": self.config.timeout}
        if self.config.max_tokens:
            kwargs["max_tokens"] = self.config.max_tokens
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        kwargs.update(self.config.extra_params)

        if provider == "anthropic":
            from langchain_anthropic import ChatAnthropic
            logger.info(f"[LLM] Using Anthropic model {self.config.model_name}")
            return ChatAnthropic(**kwargs)

        if provider == "openai":
            try:
                from langchain_openai import ChatOpenAI
            except ImportError:
                raise MissingDependencyError(
                    "langchain-openai",
                    install_command="pip install taskboard-agent[openai]",
                    purpose="the openai provider",
                )
            logger.info(f"[LLM] Using OpenAI model {self.config.model_name}")
            return ChatOpenAI(**kwargs)

        raise ConfigurationError("llm.provider", f"Unsupported provider: {provider}")

    def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[Dict[str, Any]],
        timeout: float,
        tool_choice: str = "auto",
        on_text: Optional[Callable[[str], None]] = None,
    ) -> ModelTurn:
        """
        Run one model turn.

        Raises:
            ModelTimeoutError: no response within ``timeout`` seconds
            TransportError: provider failure or malformed response
        """
        model = self.llm
        if tools:
            model = self.llm.bind_tools(list(tools), tool_choice=tool_choice)

        future = self._executor.submit(self._call, model, list(messages), on_text)
        try:
            message = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.error(f"[LLM] Model call timed out after {timeout}s")
            raise ModelTimeoutError("Model call", timeout) from None
        except TaskBoardError:
            raise
        except Exception as e:
            logger.error(f"[LLM] Model call failed: {type(e).__name__}: {e}")
            raise TransportError(f"Model channel failure: {e}", original_error=e) from e

        turn = turn_from_message(message)
        logger.debug(f"[LLM] Turn: {len(turn.text)} chars, {len(turn.tool_calls)} tool calls")
        return turn

    @staticmethod
    def _call(model, messages, on_text):
        if on_text is None:
            return model.invoke(messages)

        aggregate = None
        for chunk in model.stream(messages):
            delta = content_text(chunk.content)
            if delta:
                on_text(delta)
            aggregate = chunk if aggregate is None else aggregate + chunk
        if aggregate is None:
            raise TransportError("Model stream ended without output")
        return AIMessage(
            content=aggregate.content,
            tool_calls=aggregate.tool_calls,
            invalid_tool_calls=aggregate.invalid_tool_calls,
            id=aggregate.id,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
