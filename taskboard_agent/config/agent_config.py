"""
Agent configuration - Settings for the task board agent
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
import os

from taskboard_agent.config.env_config import EnvConfig
from taskboard_agent.utils.exceptions import ConfigurationError


class LLMProvider(str, Enum):
    """Supported LLM providers"""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


class TurnDetectionMode(str, Enum):
    """Where voice activity detection runs"""
    SERVER = "server"
    CLIENT = "client"


VALID_VOICES = ("alloy", "ash", "ballad", "coral", "echo", "sage", "shimmer", "verse")
VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass
class LLMConfig:
    """
    Configuration for LLM provider and model.

    Attributes:
        provider: LLM provider (anthropic, openai)
        model_name: Model identifier for the provider
        api_key: API key for the provider (reads from LLM_API_KEY env if not provided)
        base_url: Base URL for API (useful for proxies and compatible servers)
        temperature: Temperature for response generation (0-2)
        max_tokens: Maximum tokens in response
        timeout: Request timeout in seconds
        extra_params: Additional provider-specific parameters
    """

    provider: str = "anthropic"
    model_name: str = "claude-sonnet-4-20250514"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = None
    timeout: int = 60
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate and set up LLM configuration."""
        valid_providers = [p.value for p in LLMProvider]
        if self.provider not in valid_providers:
            raise ValueError(f"Provider must be one of {valid_providers}, got {self.provider}")

        if not 0 <= self.temperature <= 2:
            raise ValueError(f"Temperature must be between 0 and 2, got {self.temperature}")

        if self.timeout < 1:
            raise ValueError("timeout must be at least 1 second")

        # Try generic LLM_API_KEY first, then provider-specific
        if not self.api_key:
            self.api_key = os.getenv('LLM_API_KEY') or os.getenv(self._get_env_var_for_provider())

    def _get_env_var_for_provider(self) -> str:
        """Get environment variable name for provider (fallback only)."""
        env_vars = {
            "anthropic": "ANTHROPIC_API_KEY",
            "openai": "OPENAI_API_KEY",
        }
        return env_vars.get(self.provider, f"{self.provider.upper()}_API_KEY")

    def require_api_key(self) -> str:
        """Return the API key or raise when none is configured."""
        if not self.api_key:
            env_var = self._get_env_var_for_provider()
            raise ConfigurationError(
                "llm.api_key",
                f"API key not provided and LLM_API_KEY or {env_var} environment variable not set. "
                f"Set it via config or environment: export LLM_API_KEY=your-key"
            )
        return self.api_key

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding API key for security."""
        return {
            "provider": self.provider,
            "model_name": self.model_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            "base_url": self.base_url,
        }


@dataclass
class PipelineConfig:
    """
    Limits for the plan/gather/execute/verify pipeline.

    Attributes:
        max_gather_rounds: Model turns allowed in the gather stage
        max_execute_turns: Model turns allowed in the execute stage (follow-up turns
            only happen when a previous turn produced a dispatch error)
        model_timeout: Default per-call model timeout in seconds
        verify_enabled: Whether to run the verify stage after execute
    """
    max_gather_rounds: int = 1
    max_execute_turns: int = 2
    model_timeout: float = 60.0
    verify_enabled: bool = True

    def __post_init__(self):
        if self.max_gather_rounds < 1:
            raise ValueError("max_gather_rounds must be at least 1")
        if self.max_execute_turns < 1:
            raise ValueError("max_execute_turns must be at least 1")
        if self.model_timeout <= 0:
            raise ValueError("model_timeout must be positive")

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "PipelineConfig":
        """Create pipeline config from environment variables."""
        return cls(
            max_gather_rounds=EnvConfig.get_int(f"{prefix}MAX_GATHER_ROUNDS", 1),
            max_execute_turns=EnvConfig.get_int(f"{prefix}MAX_EXECUTE_TURNS", 2),
            model_timeout=EnvConfig.get_float(f"{prefix}MODEL_TIMEOUT", 60.0),
            verify_enabled=EnvConfig.get_bool(f"{prefix}VERIFY_ENABLED", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_gather_rounds": self.max_gather_rounds,
            "max_execute_turns": self.max_execute_turns,
            "model_timeout": self.model_timeout,
            "verify_enabled": self.verify_enabled,
        }


@dataclass
class TurnDetectionConfig:
    """
    Voice activity detection thresholds.

    Attributes:
        mode: "server" lets the realtime service detect turns, "client" runs the local detector
        threshold: Activation threshold (0-1)
        prefix_padding_ms: Audio kept before detected speech start
        silence_duration_ms: Silence that ends a user turn
    """
    mode: str = "server"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500

    def __post_init__(self):
        valid_modes = [m.value for m in TurnDetectionMode]
        if self.mode not in valid_modes:
            raise ValueError(f"Turn detection mode must be one of {valid_modes}, got {self.mode}")
        if not 0 <= self.threshold <= 1:
            raise ValueError(f"threshold must be between 0 and 1, got {self.threshold}")
        if self.prefix_padding_ms < 0 or self.silence_duration_ms < 0:
            raise ValueError("padding and silence durations cannot be negative")

    def to_wire(self) -> Optional[Dict[str, Any]]:
        """Realtime API turn_detection block (None disables server VAD)."""
        if self.mode == TurnDetectionMode.CLIENT.value:
            return None
        return {
            "type": "server_vad",
            "threshold": self.threshold,
            "prefix_padding_ms": self.prefix_padding_ms,
            "silence_duration_ms": self.silence_duration_ms,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "mode": self.mode,
            "threshold": self.threshold,
            "prefix_padding_ms": self.prefix_padding_ms,
            "silence_duration_ms": self.silence_duration_ms,
        }


@dataclass
class VoiceConfig:
    """
    Configuration for realtime voice sessions.

    Attributes:
        model: Realtime model name
        voice: Default synthesized voice
        api_key: Realtime API key (reads OPENAI_API_KEY if not provided)
        api_base_url: Realtime REST base URL (session bootstrap)
        ws_url: Realtime WebSocket URL
        immediate_execution: Dispatch voice tool calls without user approval
        approval_timeout: Seconds to wait for approval before denying
        turn_detection: Voice activity detection thresholds
    """
    model: str = "gpt-4o-realtime-preview"
    voice: str = "alloy"
    api_key: Optional[str] = None
    api_base_url: str = "https://api.openai.com/v1"
    ws_url: str = "wss://api.openai.com/v1/realtime"
    immediate_execution: bool = True
    approval_timeout: float = 30.0
    turn_detection: TurnDetectionConfig = field(default_factory=TurnDetectionConfig)

    def __post_init__(self):
        if self.voice not in VALID_VOICES:
            raise ValueError(f"voice must be one of {list(VALID_VOICES)}, got {self.voice}")
        if self.approval_timeout <= 0:
            raise ValueError("approval_timeout must be positive")
        if isinstance(self.turn_detection, dict):
            self.turn_detection = TurnDetectionConfig(**self.turn_detection)
        if not self.api_key:
            self.api_key = os.getenv("OPENAI_API_KEY")

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "VoiceConfig":
        """Create voice config from environment variables."""
        return cls(
            model=EnvConfig.get(f"{prefix}VOICE_MODEL", "gpt-4o-realtime-preview"),
            voice=EnvConfig.get(f"{prefix}VOICE", "alloy"),
            api_base_url=EnvConfig.get(f"{prefix}VOICE_API_BASE_URL", "https://api.openai.com/v1"),
            ws_url=EnvConfig.get(f"{prefix}VOICE_WS_URL", "wss://api.openai.com/v1/realtime"),
            immediate_execution=EnvConfig.get_bool(f"{prefix}VOICE_IMMEDIATE_EXECUTION", True),
            approval_timeout=EnvConfig.get_float(f"{prefix}VOICE_APPROVAL_TIMEOUT", 30.0),
            turn_detection=TurnDetectionConfig(
                mode=EnvConfig.get(f"{prefix}VAD_MODE", "server"),
                threshold=EnvConfig.get_float(f"{prefix}VAD_THRESHOLD", 0.5),
                prefix_padding_ms=EnvConfig.get_int(f"{prefix}VAD_PREFIX_PADDING_MS", 300),
                silence_duration_ms=EnvConfig.get_int(f"{prefix}VAD_SILENCE_DURATION_MS", 500),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding API key for security."""
        return {
            "model": self.model,
            "voice": self.voice,
            "api_base_url": self.api_base_url,
            "ws_url": self.ws_url,
            "immediate_execution": self.immediate_execution,
            "approval_timeout": self.approval_timeout,
            "turn_detection": self.turn_detection.to_dict(),
        }


@dataclass
class BoardConfig:
    """
    Task board settings.

    Attributes:
        default_duration_minutes: Calendar block length when a task has no duration
        session_tokens: Static token -> user id map for the built-in session verifier
    """
    default_duration_minutes: int = 60
    session_tokens: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.default_duration_minutes < 1:
            raise ValueError("default_duration_minutes must be at least 1")

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "BoardConfig":
        """Create board config from environment variables."""
        return cls(
            default_duration_minutes=EnvConfig.get_int(f"{prefix}DEFAULT_DURATION_MINUTES", 60),
            session_tokens=EnvConfig.get_json(f"{prefix}SESSION_TOKENS", {}) or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (tokens are never serialized)."""
        return {"default_duration_minutes": self.default_duration_minutes}


@dataclass
class AgentConfig:
    """
    Configuration settings for the task board agent.

    Attributes:
        llm: LLM configuration (default: Anthropic Claude Sonnet)
        pipeline: Stage pipeline limits
        voice: Realtime voice session settings
        board: Task board settings
        log_level: Logging level (default: 'INFO')
        debug: Enable debug mode with detailed logging (default: False)
    """

    llm: LLMConfig = field(default_factory=LLMConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    board: BoardConfig = field(default_factory=BoardConfig)
    log_level: str = "INFO"
    debug: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level}")

        if isinstance(self.llm, dict):
            self.llm = LLMConfig(**self.llm)
        if isinstance(self.pipeline, dict):
            self.pipeline = PipelineConfig(**self.pipeline)
        if isinstance(self.voice, dict):
            self.voice = VoiceConfig(**self.voice)
        if isinstance(self.board, dict):
            self.board = BoardConfig(**self.board)

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "AgentConfig":
        """
        Create configuration from environment variables.

        Args:
            prefix: Prefix for environment variables (default: "AGENT_")

        Returns:
            Configured AgentConfig instance

        Example:
            export AGENT_LOG_LEVEL=DEBUG
            export AGENT_MAX_GATHER_ROUNDS=2
            export ANTHROPIC_API_KEY=sk-...
            config = AgentConfig.from_env()
        """
        EnvConfig.load_env_file()
        max_tokens = EnvConfig.get(f"{prefix}LLM_MAX_TOKENS")
        return cls(
            llm=LLMConfig(
                provider=EnvConfig.get(f"{prefix}LLM_PROVIDER", "anthropic"),
                model_name=EnvConfig.get(f"{prefix}LLM_MODEL", "claude-sonnet-4-20250514"),
                api_key=EnvConfig.get("LLM_API_KEY"),
                base_url=EnvConfig.get("LLM_API_BASE_URL"),
                temperature=EnvConfig.get_float(f"{prefix}LLM_TEMPERATURE", 0.2),
                max_tokens=int(max_tokens) if max_tokens else None,
                timeout=EnvConfig.get_int(f"{prefix}TIMEOUT", 60),
            ),
            pipeline=PipelineConfig.from_env(prefix),
            voice=VoiceConfig.from_env(prefix),
            board=BoardConfig.from_env(prefix),
            log_level=EnvConfig.get(f"{prefix}LOG_LEVEL", "INFO").upper(),
            debug=EnvConfig.get_bool(f"{prefix}DEBUG", False),
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "AgentConfig":
        """
        Create configuration from dictionary.

        Example:
            config = AgentConfig.from_dict({
                "llm": {"provider": "openai", "model_name": "gpt-4o", "api_key": "sk-..."},
                "pipeline": {"max_gather_rounds": 2},
                "log_level": "DEBUG"
            })
        """
        config_dict = dict(config_dict)
        return cls(
            llm=config_dict.pop("llm", {}),
            pipeline=config_dict.pop("pipeline", {}),
            voice=config_dict.pop("voice", {}),
            board=config_dict.pop("board", {}),
            **config_dict
        )

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Convert to dictionary.

        Args:
            include_secrets: Whether to include API keys (default: False)

        Returns:
            Dictionary representation of config
        """
        result = {
            "llm": self.llm.to_dict(),
            "pipeline": self.pipeline.to_dict(),
            "voice": self.voice.to_dict(),
            "board": self.board.to_dict(),
            "log_level": self.log_level,
            "debug": self.debug,
        }

        if include_secrets:
            if self.llm.api_key:
                result["llm"]["api_key"] = self.llm.api_key
            if self.voice.api_key:
                result["voice"]["api_key"] = self.voice.api_key

        return result
