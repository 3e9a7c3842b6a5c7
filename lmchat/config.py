"""
Configuration constants and engine defaults for lmchat.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from lmchat.errors import ConfigurationError


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Engine-wide, overridable via environment
# ─────────────────────────────────────────────────────────────────────

DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_TOP_P: float = 0.95
DEFAULT_TOP_K: int = 40
DEFAULT_FREQUENCY_PENALTY: float = 0.0
DEFAULT_PRESENCE_PENALTY: float = 0.0
DEFAULT_MAX_OUTPUT_TOKENS: int = 512
DEFAULT_MAX_TOOL_CALLS: int = 5
DEFAULT_STREAM_QUEUE_SIZE: int = 64
DEFAULT_LOGITS_TOP_N: int = 64
DEFAULT_SYSTEM_PROMPT: str = "You are a helpful assistant."
DEFAULT_SERVER_URL: str = "http://127.0.0.1:8080"
DEFAULT_TIMEOUT_SECONDS: int = 120


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def _env_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except ValueError:
        return default


def get_server_url() -> str:
    """
    Get the llama.cpp server URL from environment or default.

    Set LMCHAT_SERVER_URL in .env (default: http://127.0.0.1:8080).
    """
    value = os.environ.get("LMCHAT_SERVER_URL", "").strip()
    return value.rstrip("/") if value else DEFAULT_SERVER_URL


def get_timeout_seconds() -> int:
    """Per-request HTTP timeout. Set LMCHAT_TIMEOUT_SECONDS (default: 120)."""
    return _env_int("LMCHAT_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)


def get_retry_attempts() -> int:
    """
    Get max retry attempts for transient backend errors.

    Set LMCHAT_RETRY_ATTEMPTS in .env (default: 3).
    """
    return _env_int("LMCHAT_RETRY_ATTEMPTS", 3)


def get_retry_min_wait() -> int:
    """Minimum wait between retries in seconds. Set LMCHAT_RETRY_MIN_WAIT (default: 1)."""
    return _env_int("LMCHAT_RETRY_MIN_WAIT", 1)


def get_retry_max_wait() -> int:
    """Maximum wait between retries in seconds. Set LMCHAT_RETRY_MAX_WAIT (default: 10)."""
    return _env_int("LMCHAT_RETRY_MAX_WAIT", 10)


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class EngineDefaults(BaseModel):
    """
    Engine-wide defaults for every option a request may leave unset.

    Sampling, limits and the streaming queue bound all resolve against
    one instance of this model, so changing a default here changes it
    for every conversation built from it.
    """
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0)
    top_p: float = Field(default=DEFAULT_TOP_P, gt=0.0, le=1.0)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=0)
    frequency_penalty: float = DEFAULT_FREQUENCY_PENALTY
    presence_penalty: float = DEFAULT_PRESENCE_PENALTY
    max_output_tokens: int = Field(default=DEFAULT_MAX_OUTPUT_TOKENS, gt=0)
    max_tool_calls: int = Field(default=DEFAULT_MAX_TOOL_CALLS, ge=0)
    stream_queue_size: int = Field(default=DEFAULT_STREAM_QUEUE_SIZE, ge=1)
    logits_top_n: int = Field(default=DEFAULT_LOGITS_TOP_N, ge=1)
    seed: Optional[int] = None

    @classmethod
    def from_env(cls) -> "EngineDefaults":
        """
        Build defaults from LMCHAT_* environment variables.

        Unparseable values fall back to the built-in default.

        Raises:
            ConfigurationError: A value parses but is out of range
        """
        seed = os.environ.get("LMCHAT_SEED")
        try:
            seed_value = int(seed) if seed else None
        except ValueError:
            seed_value = None
        try:
            return cls(
                temperature=_env_float("LMCHAT_TEMPERATURE", DEFAULT_TEMPERATURE),
                top_p=_env_float("LMCHAT_TOP_P", DEFAULT_TOP_P),
                top_k=_env_int("LMCHAT_TOP_K", DEFAULT_TOP_K),
                frequency_penalty=_env_float("LMCHAT_FREQUENCY_PENALTY", DEFAULT_FREQUENCY_PENALTY),
                presence_penalty=_env_float("LMCHAT_PRESENCE_PENALTY", DEFAULT_PRESENCE_PENALTY),
                max_output_tokens=_env_int("LMCHAT_MAX_OUTPUT_TOKENS", DEFAULT_MAX_OUTPUT_TOKENS),
                max_tool_calls=_env_int("LMCHAT_MAX_TOOL_CALLS", DEFAULT_MAX_TOOL_CALLS),
                stream_queue_size=_env_int("LMCHAT_STREAM_QUEUE_SIZE", DEFAULT_STREAM_QUEUE_SIZE),
                logits_top_n=_env_int("LMCHAT_LOGITS_TOP_N", DEFAULT_LOGITS_TOP_N),
                seed=seed_value,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid LMCHAT_* engine default: {e}") from e
