from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .provider_schema import ProviderConfig

logger = logging.getLogger(__name__)

# Hosted fallback order. The first enabled provider with a usable credential
# that returns an accepted answer wins.
PROVIDER_ORDER: Tuple[str, ...] = ("openai", "gemini", "groq", "huggingface", "ollama")
LOCAL_PROVIDER_NAME = "ollama-local"

DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_CONNECT_TIMEOUT_MS = 15_000

DEFAULT_LOCAL_URL = "http://localhost:11434"
LOCAL_MODEL_PREFERENCE: Tuple[str, ...] = ("llama3", "llama2", "llama", "mistral", "phi")

CONGESTION_BUSY_AT = 15
CONGESTION_VERY_BUSY_AT = 30

_PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "enabled": False,
        "model": "gpt-3.5-turbo",
        "endpoint": "https://api.openai.com/v1",
        "requires_credential": True,
    },
    "gemini": {
        "enabled": False,
        "model": "gemini-1.5-flash",
        "endpoint": "https://generativelanguage.googleapis.com/v1beta",
        "requires_credential": True,
    },
    "groq": {
        "enabled": False,
        "model": "llama-3.1-8b-instant",
        "endpoint": "https://api.groq.com/openai/v1",
        "requires_credential": True,
    },
    "huggingface": {
        "enabled": False,
        "model": "microsoft/DialoGPT-medium",
        "endpoint": "https://api-inference.huggingface.co/models",
        "requires_credential": False,
    },
    "ollama": {
        "enabled": False,
        "model": "llama3",
        "endpoint": "",
        "requires_credential": False,
    },
}

# Env var prefix per provider; OLLAMA_URL is the self-hosted instance base URL.
_ENV_PREFIX = {
    "openai": "OPENAI",
    "gemini": "GEMINI",
    "groq": "GROQ",
    "huggingface": "HUGGINGFACE",
    "ollama": "OLLAMA",
}


class EngineSettings(BaseModel):
    data_dir: str = "data"
    hosted: bool = True
    history_turns: int = 6
    min_response_length: int = 10
    max_message_length: int = 3000
    congestion_busy_at: int = CONGESTION_BUSY_AT
    congestion_very_busy_at: int = CONGESTION_VERY_BUSY_AT
    local_url: str = DEFAULT_LOCAL_URL
    local_model_preference: Tuple[str, ...] = LOCAL_MODEL_PREFERENCE
    chain_deadline_ms: Optional[int] = None
    debug_log_limit: int = 50
    run_probes: bool = True
    extra: Dict[str, Any] = Field(default_factory=dict)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def load_engine_settings(path: Optional[str] = None) -> EngineSettings:
    """
    Engine settings from the environment (CAFETERIA_* and AI_CHAIN_DEADLINE_MS).
    A provider override file may also set `local_url`.
    """
    local_url = os.getenv("OLLAMA_LOCAL_URL", DEFAULT_LOCAL_URL)
    if path:
        local_url = _read_override_file(path).get("local_url") or local_url
    return EngineSettings(
        data_dir=os.getenv("CAFETERIA_DATA_DIR", "data"),
        hosted=_env_bool("CAFETERIA_HOSTED", True),
        local_url=local_url,
        chain_deadline_ms=_env_int("AI_CHAIN_DEADLINE_MS", None),
    )


def _read_override_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Provider config file not found: {path}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in provider config file: {path}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Provider config file must hold a JSON object: {path}")
    return data


def load_provider_configs(path: Optional[str] = None) -> List[ProviderConfig]:
    """
    Build the ordered provider list.

    Values come from environment variables (OPENAI_ENABLED, OPENAI_API_KEY,
    OPENAI_MODEL, OPENAI_BASE_URL, ... and the shared AI_TIMEOUT_MS /
    AI_CONNECT_TIMEOUT_MS). When `path` is given, that JSON document overrides
    them using the per-provider layout:

        {"openai": {"enabled": true, "api_key": "...", "model": "...", "base_url": "..."},
         "ollama": {"enabled": false, "production_url": "", "production_model": "llama3"},
         "timeout": 120, "connect_timeout": 15}

    Timeouts in the file are seconds.
    """
    override = _read_override_file(path) if path else {}

    timeout_ms = _env_int("AI_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)
    connect_ms = _env_int("AI_CONNECT_TIMEOUT_MS", DEFAULT_CONNECT_TIMEOUT_MS)
    if "timeout" in override:
        timeout_ms = int(float(override["timeout"]) * 1000)
    if "connect_timeout" in override:
        connect_ms = int(float(override["connect_timeout"]) * 1000)

    configs: List[ProviderConfig] = []
    for name in PROVIDER_ORDER:
        defaults = _PROVIDER_DEFAULTS[name]
        prefix = _ENV_PREFIX[name]

        enabled = _env_bool(f"{prefix}_ENABLED", defaults["enabled"])
        credential = os.getenv(f"{prefix}_API_KEY") or None
        model = os.getenv(f"{prefix}_MODEL", defaults["model"])
        if name == "ollama":
            endpoint = os.getenv("OLLAMA_URL", defaults["endpoint"])
        else:
            endpoint = os.getenv(f"{prefix}_BASE_URL", defaults["endpoint"])

        section = override.get(name)
        if isinstance(section, dict):
            enabled = bool(section.get("enabled", enabled))
            credential = section.get("api_key", credential) or None
            model = section.get("production_model" if name == "ollama" else "model", model) or model
            endpoint = section.get("production_url" if name == "ollama" else "base_url", endpoint) or endpoint

        configs.append(
            ProviderConfig(
                name=name,
                enabled=enabled,
                credential=credential,
                endpoint=endpoint,
                model=model,
                timeout_ms=timeout_ms,
                connect_timeout_ms=connect_ms,
                requires_credential=defaults["requires_credential"],
            )
        )
    return configs


def local_provider_config(settings: EngineSettings, model: str) -> ProviderConfig:
    return ProviderConfig(
        name=LOCAL_PROVIDER_NAME,
        enabled=True,
        endpoint=settings.local_url,
        model=model,
        timeout_ms=DEFAULT_TIMEOUT_MS,
        connect_timeout_ms=DEFAULT_CONNECT_TIMEOUT_MS,
        requires_credential=False,
    )
