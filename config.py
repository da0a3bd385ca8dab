"""
Configuration module for the Bedrock coding-agent execution core.
Handles environment variables, model specifications, and loop/budget settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    # Model used when a zero-change run is re-executed under a stronger tier
    escalation_model_id: str = os.getenv("ESCALATION_MODEL_ID", "us.anthropic.claude-opus-4-6-v1")
    # Model used by delegated specialists
    specialist_model_id: str = os.getenv("SPECIALIST_MODEL_ID", "")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "32000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")

    # Extended thinking settings
    enable_thinking: bool = _env_bool("ENABLE_THINKING", "false")
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "16000"))


@dataclass
class AppConfig:
    """Application and agent-loop configuration"""
    title: str = "Bedrock Codex Core"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug_mode: bool = _env_bool("DEBUG_MODE", "false")
    data_directory: str = os.getenv(
        "CODEX_DATA_DIR", os.path.join(os.path.expanduser("~"), ".bedrock-codex")
    )

    # Iteration ceilings per strategy
    minimal_max_iterations: int = int(os.getenv("MINIMAL_MAX_ITERATIONS", "8"))
    hybrid_max_iterations: int = int(os.getenv("HYBRID_MAX_ITERATIONS", "24"))
    maximal_max_iterations: int = int(os.getenv("MAXIMAL_MAX_ITERATIONS", "40"))
    # Files pre-loaded into the first turn per strategy
    minimal_preload_files: int = int(os.getenv("MINIMAL_PRELOAD_FILES", "3"))
    hybrid_preload_files: int = int(os.getenv("HYBRID_PRELOAD_FILES", "8"))
    maximal_preload_files: int = int(os.getenv("MAXIMAL_PRELOAD_FILES", "20"))
    # Iterations without a mutation before a hybrid run escalates to maximal
    stall_iterations: int = int(os.getenv("STALL_ITERATIONS", "6"))

    # Wall-clock execution budget (seconds) and checkpoint safety margin
    execution_timeout: float = float(os.getenv("EXECUTION_TIMEOUT", "600"))
    checkpoint_margin_seconds: float = float(os.getenv("CHECKPOINT_MARGIN_SECONDS", "45"))
    # Streaming transport
    first_byte_timeout: float = float(os.getenv("FIRST_BYTE_TIMEOUT", "30"))
    stream_idle_timeout: float = float(os.getenv("STREAM_IDLE_TIMEOUT", "120"))
    stream_max_retries: int = int(os.getenv("STREAM_MAX_RETRIES", "3"))
    stream_retry_backoff: float = float(os.getenv("STREAM_RETRY_BACKOFF", "2"))

    # Tool dispatch
    lookup_budget: int = int(os.getenv("LOOKUP_BUDGET", "12"))
    lookup_abort_threshold: int = int(os.getenv("LOOKUP_ABORT_THRESHOLD", "20"))
    max_parallel_tools: int = int(os.getenv("MAX_PARALLEL_TOOLS", "4"))
    max_tool_output_chars: int = int(os.getenv("MAX_TOOL_OUTPUT_CHARS", "8000"))
    max_mutation_failures: int = int(os.getenv("MAX_MUTATION_FAILURES", "3"))
    max_tool_calls: int = int(os.getenv("MAX_TOOL_CALLS", "120"))

    # Stop/retry policy
    max_nudges: int = int(os.getenv("MAX_NUDGES", "2"))
    max_escalation_depth: int = int(os.getenv("MAX_ESCALATION_DEPTH", "1"))
    min_narrative_chars: int = int(os.getenv("MIN_NARRATIVE_CHARS", "80"))

    # Context management
    compress_ratio: float = float(os.getenv("COMPRESS_RATIO", "0.55"))
    provider_trim_ratio: float = float(os.getenv("PROVIDER_TRIM_RATIO", "0.80"))
    anchor_ratio: float = float(os.getenv("ANCHOR_RATIO", "0.75"))
    anchor_min_interval: int = int(os.getenv("ANCHOR_MIN_INTERVAL", "5"))

    # Verification
    max_verification_injections: int = int(os.getenv("MAX_VERIFICATION_INJECTIONS", "6"))

    # Specialists
    specialist_max_iterations: int = int(os.getenv("SPECIALIST_MAX_ITERATIONS", "6"))

    # Intent classification through a fast model call instead of heuristics only
    llm_intent_classification: bool = _env_bool("LLM_INTENT_CLASSIFICATION", "false")
    fast_model: str = os.getenv("FAST_MODEL", "us.anthropic.claude-haiku-4-5-20251001-v1:0")


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# All models support tool_use which is required for the agent loop.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-6-v1",
        "base_id": "anthropic.claude-opus-4-6-v1",
        "name": "Claude Opus 4.6",
        "context_window": 200000,
        "max_output_tokens": 128000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 128000,
        "supports_caching": True,
        "cache_ttl_options": ["5m"],
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
        "supports_caching": True,
        "cache_ttl_options": ["5m", "1h"],
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
        "supports_caching": True,
        "cache_ttl_options": ["5m"],
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown model IDs get a minimal
    fallback dict; callers use .get(key, default) for any key they need."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 32000,
        "requires_profile": False,
        "supports_thinking": False,
        "thinking_max_budget": 0,
        "supports_caching": False,
        "cache_ttl_options": ["5m"],
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 200000)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def supports_thinking(model_id: str) -> bool:
    """Check if model supports extended thinking"""
    return get_model_config(model_id).get("supports_thinking", False)


def get_thinking_max_budget(model_id: str) -> int:
    return get_model_config(model_id).get("thinking_max_budget", 0)


def supports_caching(model_id: str) -> bool:
    """Check if model supports prompt caching"""
    return get_model_config(model_id).get("supports_caching", False)


def get_cache_ttl_options(model_id: str) -> List[str]:
    return get_model_config(model_id).get("cache_ttl_options", ["5m"])
