"""Cascade engine configuration.

Settings come from ~/.cascade/configuration.json, for example::

    {
      "llm": {
        "provider": "anthropic",
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 4096,
        "api_key_env_var": "ANTHROPIC_API_KEY",
        "timeout_seconds": 120
      }
    }

``CASCADE_MODEL`` overrides the model. The API key itself is never stored
in the file, only the name of the environment variable holding it.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_EVENT_HISTORY = 1000

CASCADE_CONFIG_FILE = Path.home() / ".cascade" / "configuration.json"


def get_cascade_config() -> dict[str, Any]:
    """Parsed configuration file, or {} when it is missing or unreadable."""
    try:
        with open(CASCADE_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _llm_section() -> dict[str, Any]:
    return get_cascade_config().get("llm") or {}


def get_preferred_model() -> str:
    """LiteLLM model string: CASCADE_MODEL, else provider/model from the file."""
    env_model = os.environ.get("CASCADE_MODEL")
    if env_model:
        return env_model
    llm = _llm_section()
    provider, model = llm.get("provider"), llm.get("model")
    if provider and model:
        return f"{provider}/{model}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    return int(_llm_section().get("max_tokens", DEFAULT_MAX_TOKENS))


def get_api_key() -> str | None:
    """Value of the environment variable named by ``llm.api_key_env_var``."""
    env_var = _llm_section().get("api_key_env_var")
    return os.environ.get(env_var) if env_var else None


def get_request_timeout() -> float | None:
    """Per-call timeout of the generation client. None means wait forever."""
    timeout = _llm_section().get("timeout_seconds")
    return float(timeout) if timeout is not None else None


@dataclass
class CascadeConfig:
    """Engine configuration. Unset fields are read from the configuration file."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
    request_timeout: float | None = field(default_factory=get_request_timeout)
    event_history_size: int = DEFAULT_EVENT_HISTORY
