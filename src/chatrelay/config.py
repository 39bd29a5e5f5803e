from __future__ import annotations

"""Runtime settings for the chat relay service.

Values are read from the environment (optionally seeded from ``.env``).
Provider-specific keys (``OPENAI_API_KEY``, ``LOCAL_BASE_URL`` ...) are
resolved by :mod:`chatrelay.services.model_router`; everything else lives here.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
        return value if value >= 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
        return value if value >= 0 else default
    except ValueError:
        return default


def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT

    max_stream_seconds: float = 120.0
    upstream_retries: int = 2
    retry_backoff_seconds: float = 0.5

    rate_limit: int = 20
    rate_limit_window_seconds: int = 60
    rate_limit_disabled: bool = False

    store_impl: str = "memory"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "chatrelay"
    redis_url: Optional[str] = None

    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:8501", "http://127.0.0.1:8501"])
    env: Dict[str, str] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        source = dict(env if env is not None else os.environ)
        origins_raw = source.get("CHATRELAY_CORS_ORIGINS", "")
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]
        settings = Settings(
            provider=(source.get("CHATRELAY_PROVIDER") or "").strip().lower() or None,
            model=(source.get("CHATRELAY_MODEL") or "").strip() or None,
            temperature=_env_float(source, "CHATRELAY_TEMPERATURE", 0.7),
            max_tokens=_env_int(source, "CHATRELAY_MAX_TOKENS", 1000),
            default_system_prompt=source.get("CHATRELAY_DEFAULT_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
            max_stream_seconds=_env_float(source, "CHATRELAY_MAX_STREAM_SECONDS", 120.0),
            upstream_retries=_env_int(source, "CHATRELAY_UPSTREAM_RETRIES", 2),
            retry_backoff_seconds=_env_float(source, "CHATRELAY_RETRY_BACKOFF", 0.5),
            rate_limit=_env_int(source, "CHATRELAY_RATE_LIMIT", 20) or 20,
            rate_limit_window_seconds=_env_int(source, "CHATRELAY_RATE_LIMIT_WINDOW", 60) or 60,
            rate_limit_disabled=_env_flag(source, "CHATRELAY_RATE_LIMIT_DISABLED"),
            store_impl=(source.get("CHATRELAY_STORE") or "memory").strip().lower(),
            mongo_url=source.get("MONGO_URL", "mongodb://localhost:27017"),
            mongo_db=source.get("MONGO_DB", "chatrelay"),
            redis_url=source.get("REDIS_URL") or None,
            env=source,
        )
        if origins:
            settings.cors_origins = origins
        return settings
