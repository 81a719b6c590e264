"""
Configuration Management
========================

All runtime settings in one place, read from the environment (and a .env
file) into frozen dataclasses.

Sections:
- model: which backend model to call and how
- agent: iteration budget, tool fan-out, working directory
- autonomy: per task type autonomy level (full / supervised / manual)
- streaming: overall and inter-chunk timeouts for the chat stream
- routing: intent classification mode and thresholds
- retry: backoff policy for transient upstream failures
- rate_limit: sliding-window admission for outbound model calls
- persistence: where tasks and their events are stored

Usage:
    from taskpilot.utils.config import get_config

    config = get_config()
    print(config.agent.max_iterations)
    print(config.streaming.chunk_timeout)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from taskpilot.utils.logger import Logger

logger = Logger("Config")


def _required(name: str) -> str:
    """
    Get a required environment variable.

    Raises:
        ValueError: If the variable is not set
    """
    value = os.getenv(name)
    if not value:
        raise ValueError(
            f"Missing required environment variable: {name}\n"
            f"Please ensure {name} is set in your .env file."
        )
    return value


def _optional(name: str, default: str) -> str:
    return os.getenv(name, default)


def _optional_int(name: str, default: int) -> int:
    """Get an integer variable, falling back to the default when invalid."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"{name} is not a valid integer, using default: {default}")
        return default


def _optional_float(name: str, default: float) -> float:
    """Get a float variable, falling back to the default when invalid."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"{name} is not a valid number, using default: {default}")
        return default


def _optional_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ==============================================================================
# Configuration Dataclasses
# ==============================================================================

@dataclass(frozen=True)
class ModelConfig:
    """Model backend configuration."""
    api_key: str | None     # sk-... only needed by the OpenAI backend
    model: str              # Default model for agent runs
    base_url: str | None    # OpenAI-compatible endpoint override
    max_tokens: int
    temperature: float

    def require_api_key(self) -> str:
        """Return the API key or fail with a helpful message."""
        if not self.api_key:
            return _required("OPENAI_API_KEY")
        return self.api_key


@dataclass(frozen=True)
class AgentConfig:
    """Agent loop configuration."""
    max_iterations: int        # Iteration budget per task
    parallel_tools: bool       # Run a batch of tool calls concurrently
    max_parallel_tools: int    # Fan-out bound for parallel batches
    tool_timeout: float        # Seconds before a tool call is abandoned
    working_directory: Path    # Root the file/git/test tools operate in
    max_retries: int           # Task-level retry budget


DEFAULT_AUTONOMY_LEVELS: dict[str, str] = {
    "test": "full",
    "qa": "full",
    "feature": "supervised",
    "refactor": "supervised",
    "docs": "supervised",
    "security": "supervised",
}


@dataclass(frozen=True)
class AutonomyConfig:
    """Autonomy level per task type."""
    task_types: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_AUTONOMY_LEVELS))

    def level_for(self, task_type: str) -> str:
        return self.task_types.get(task_type, "supervised")


@dataclass(frozen=True)
class StreamingConfig:
    """Chat stream timeouts (seconds) and endpoint."""
    timeout: float          # Ceiling for the whole stream
    chunk_timeout: float    # Max silence between chunks
    chat_url: str           # Endpoint that speaks the event-stream format


@dataclass(frozen=True)
class RoutingConfig:
    """Intent routing configuration."""
    mode: str                    # "rule_based" or "llm_hybrid"
    confidence_threshold: float  # Below this, auto-routing is not applied
    auto_routing_enabled: bool
    intent_providers: dict[str, str] = field(default_factory=dict)  # ROUTING_PROVIDER_<INTENT>
    intent_models: dict[str, str] = field(default_factory=dict)     # ROUTING_MODEL_<INTENT>


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for transient upstream failures."""
    max_retries: int
    base_delay: float
    max_delay: float
    jitter_factor: float
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding-window admission for outbound model calls."""
    max_requests: int
    window_seconds: float
    cleanup_interval_seconds: float


@dataclass(frozen=True)
class PersistenceConfig:
    """Task persistence backend."""
    type: str               # "memory" or "http"
    base_url: str | None
    api_key: str | None


@dataclass(frozen=True)
class Config:
    """
    Root configuration object.

    Access via:
        config = get_config()
        config.model.model
        config.routing.confidence_threshold
    """
    model: ModelConfig
    agent: AgentConfig
    autonomy: AutonomyConfig
    streaming: StreamingConfig
    routing: RoutingConfig
    retry: RetryConfig
    rate_limit: RateLimitConfig
    persistence: PersistenceConfig
    log_level: str


def _load_autonomy() -> AutonomyConfig:
    levels = dict(DEFAULT_AUTONOMY_LEVELS)
    for task_type in DEFAULT_AUTONOMY_LEVELS:
        override = os.getenv(f"TASKPILOT_AUTONOMY_{task_type.upper()}")
        if not override:
            continue
        override = override.strip().lower()
        if override not in ("full", "supervised", "manual"):
            logger.warning(f"Ignoring invalid autonomy level for {task_type}: {override}")
            continue
        levels[task_type] = override
    return AutonomyConfig(task_types=levels)


ROUTING_INTENTS = ("knowledge_query", "code_task", "data_analysis", "action_request", "general_chat")


def _load_intent_map(prefix: str) -> dict[str, str]:
    """Per-intent overrides such as ROUTING_MODEL_CODE_TASK=gpt-4o."""
    overrides = {}
    for intent in ROUTING_INTENTS:
        value = os.getenv(f"{prefix}{intent.upper()}")
        if value:
            overrides[intent] = value.strip()
    return overrides


def load_config() -> Config:
    """
    Load and validate configuration from the environment.

    Returns:
        Config: The validated configuration
    """
    load_dotenv()

    routing_mode = _optional("ROUTING_MODE", "rule_based")
    if routing_mode not in ("rule_based", "llm_hybrid"):
        logger.warning(f"Unknown ROUTING_MODE '{routing_mode}', using rule_based")
        routing_mode = "rule_based"

    return Config(
        model=ModelConfig(
            api_key=os.getenv("OPENAI_API_KEY"),
            model=_optional("TASKPILOT_MODEL", "gpt-4o"),
            base_url=os.getenv("OPENAI_BASE_URL"),
            max_tokens=_optional_int("TASKPILOT_MAX_TOKENS", 8192),
            temperature=_optional_float("TASKPILOT_TEMPERATURE", 0.0),
        ),
        agent=AgentConfig(
            max_iterations=_optional_int("TASKPILOT_MAX_ITERATIONS", 10),
            parallel_tools=_optional_bool("TASKPILOT_PARALLEL_TOOLS", False),
            max_parallel_tools=_optional_int("TASKPILOT_MAX_PARALLEL_TOOLS", 4),
            tool_timeout=_optional_float("TASKPILOT_TOOL_TIMEOUT", 120.0),
            working_directory=Path(_optional("TASKPILOT_WORKDIR", os.getcwd())).resolve(),
            max_retries=_optional_int("TASKPILOT_MAX_RETRIES", 3),
        ),
        autonomy=_load_autonomy(),
        streaming=StreamingConfig(
            timeout=_optional_float("TASKPILOT_STREAM_TIMEOUT", 120.0),
            chunk_timeout=_optional_float("TASKPILOT_STREAM_CHUNK_TIMEOUT", 30.0),
            chat_url=_optional("TASKPILOT_CHAT_URL", "http://localhost:3000/api/chat"),
        ),
        routing=RoutingConfig(
            mode=routing_mode,
            confidence_threshold=_optional_float("ROUTING_CONFIDENCE_THRESHOLD", 0.7),
            auto_routing_enabled=_optional_bool("ENABLE_AUTO_ROUTING", False),
            intent_providers=_load_intent_map("ROUTING_PROVIDER_"),
            intent_models=_load_intent_map("ROUTING_MODEL_"),
        ),
        retry=RetryConfig(
            max_retries=_optional_int("TASKPILOT_RETRY_MAX", 3),
            base_delay=_optional_float("TASKPILOT_RETRY_BASE_DELAY", 1.0),
            max_delay=_optional_float("TASKPILOT_RETRY_MAX_DELAY", 30.0),
            jitter_factor=_optional_float("TASKPILOT_RETRY_JITTER", 0.1),
        ),
        rate_limit=RateLimitConfig(
            max_requests=_optional_int("TASKPILOT_RATE_LIMIT_MAX", 60),
            window_seconds=_optional_float("TASKPILOT_RATE_LIMIT_WINDOW", 60.0),
            cleanup_interval_seconds=_optional_float("TASKPILOT_RATE_LIMIT_CLEANUP", 60.0),
        ),
        persistence=PersistenceConfig(
            type=_optional("TASKPILOT_PERSISTENCE", "memory"),
            base_url=os.getenv("TASKPILOT_PERSISTENCE_URL"),
            api_key=os.getenv("TASKPILOT_PERSISTENCE_API_KEY"),
        ),
        log_level=_optional("TASKPILOT_LOG_LEVEL", _optional("LOG_LEVEL", "info")),
    )


# ==============================================================================
# Singleton
# ==============================================================================

_config_instance: Config | None = None


def get_config() -> Config:
    """
    Get the process-wide configuration, loading it on first access.

    Returns:
        Config: The application configuration
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config()
    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
