"""Routing helpers for selecting the completion provider.

The router does not couple directly to concrete SDK clients; it resolves a
provider configuration once, at startup, which
:func:`chatrelay.services.providers.build_provider` turns into a concrete
provider. Keeping the policy here keeps it unit-testable without importing
any SDK.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle completions."""

    name: str
    family: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    api_style: str = "auto"


class ModelRouter:
    """Policy-based provider resolution from environment variables."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "family": "openai",
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "gemini": {
            "family": "openai",
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.5-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        },
        "xai": {
            "family": "openai",
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "local": {
            "family": "local",
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.1:8b",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
        },
        "offline": {
            "family": "offline",
            "default_model": "offline",
            "requires_api_key": False,
        },
    }

    # Hosted providers first, then a local host, then the scripted reply.
    PRIORITY: tuple[str, ...] = ("openai", "gemini", "xai", "local", "offline")

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if provider == "offline":
            return True
        if provider == "local":
            enabled_flag = (self._env.get("CHATRELAY_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
            base_url_env = str(cfg.get("base_url_env") or "")
            return enabled_flag or bool(self._env.get(base_url_env))
        api_key_env = str(cfg.get("api_key_env") or "")
        return bool(api_key_env and self._env.get(api_key_env))

    def resolve_provider(self, provider: str, model_hint: Optional[str] = None) -> ProviderSelection:
        """Build the selection for ``provider``; raises ``KeyError`` when unknown."""

        cfg = self.PROVIDER_CONFIG[provider]
        model_env = str(cfg.get("model_env") or "")
        model = model_hint or self._env.get(model_env) or str(cfg.get("default_model") or "")
        api_key_env = str(cfg.get("api_key_env") or "")
        base_url_env = str(cfg.get("base_url_env") or "")
        base_url = self._env.get(base_url_env) if base_url_env else None
        api_style = "auto"
        if provider == "local":
            api_style = (self._env.get("CHATRELAY_LOCAL_API") or "auto").strip().lower()
        return ProviderSelection(
            name=provider,
            family=str(cfg.get("family")),
            model=model,
            api_key=self._env.get(api_key_env) if api_key_env else None,
            base_url=base_url or (str(cfg["default_base_url"]) if cfg.get("default_base_url") else None),
            api_style=api_style,
        )

    def select_provider(self, preferred: Optional[str] = None, model_hint: Optional[str] = None) -> ProviderSelection:
        """Return the configured provider, honouring an explicit preference.

        Raises
        ------
        RuntimeError
            If ``preferred`` names a provider that is unknown or not configured.
        """

        if preferred:
            if preferred not in self.PROVIDER_CONFIG:
                raise RuntimeError(f"Unknown provider: {preferred}")
            if not self.provider_available(preferred):
                raise RuntimeError(f"Provider {preferred} is not configured")
            return self.resolve_provider(preferred, model_hint)
        for provider in self.PRIORITY:
            if self.provider_available(provider):
                return self.resolve_provider(provider, model_hint)
        return self.resolve_provider("offline", model_hint)
