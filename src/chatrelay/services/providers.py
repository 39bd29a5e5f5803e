from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx
import openai
from langchain_openai import ChatOpenAI

from ..config import Settings
from ..domain.chat_models import ConversationTurn, GenerationParams
from ..domain.exceptions import (
    UpstreamError,
    UpstreamRateLimited,
    UpstreamRejected,
    UpstreamTransportFailure,
)
from .conversation import as_payload
from .model_router import ModelRouter, ProviderSelection
from .streaming import iter_as_async


logger = logging.getLogger(__name__)
LOG = logging.getLogger("chatrelay.llm")


class CompletionProvider(Protocol):
    name: str
    model: str

    def stream(self, turns: Sequence[ConversationTurn], params: GenerationParams) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


def _retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _status_error(status_code: int, message: str, headers: Optional[Mapping[str, str]] = None) -> UpstreamError:
    if status_code == 429:
        return UpstreamRateLimited(message or "Too many requests", retry_after_seconds=_retry_after(headers))
    if status_code >= 500:
        return UpstreamTransportFailure(f"Provider error {status_code}: {message}".strip(), status_code=status_code)
    return UpstreamRejected(message or f"Provider rejected the request ({status_code})", status_code=status_code)


def map_openai_error(exc: BaseException) -> UpstreamError:
    """Translate openai SDK / httpx exceptions into the relay taxonomy."""

    if isinstance(exc, openai.RateLimitError):
        return UpstreamRateLimited(str(exc.message), retry_after_seconds=_retry_after(exc.response.headers))
    if isinstance(exc, openai.APIStatusError):
        return _status_error(exc.status_code, str(exc.message), exc.response.headers)
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamTransportFailure(str(exc))
    if isinstance(exc, (openai.APIError, httpx.HTTPError)):
        return UpstreamTransportFailure(str(exc) or exc.__class__.__name__)
    return UpstreamTransportFailure(repr(exc))


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return ""


class OpenAIProvider:
    """Hosted OpenAI-compatible chat completions through ``ChatOpenAI``."""

    def __init__(
        self,
        name: str,
        model: str,
        api_key: Optional[str],
        base_url: Optional[str],
        timeout: float = 60.0,
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout

    def _client(self, params: GenerationParams) -> ChatOpenAI:
        return ChatOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            model=params.model or self.model,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            timeout=self._timeout,
            max_retries=0,
            streaming=True,
        )

    async def stream(self, turns: Sequence[ConversationTurn], params: GenerationParams) -> AsyncIterator[str]:
        llm = self._client(params)
        LOG.debug("openai_stream", extra={"provider": self.name, "model": params.model or self.model})
        finished = False
        try:
            async for chunk in llm.astream(as_payload(turns)):
                metadata = getattr(chunk, "response_metadata", None) or {}
                if metadata.get("finish_reason"):
                    finished = True
                text = _chunk_text(chunk)
                if text:
                    yield text
        except (openai.APIError, httpx.HTTPError) as exc:
            raise map_openai_error(exc) from exc
        if not finished:
            raise UpstreamTransportFailure("Upstream stream ended before completion")

    async def aclose(self) -> None:
        return None


class LocalProvider:
    """Local inference host speaking OpenAI-style SSE or Ollama NDJSON."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_style: str = "auto",
        api_key: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = "local"
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_style = api_style if api_style in ("auto", "openai", "ollama") else "auto"
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or httpx.Timeout(120.0, connect=3.0),
            transport=transport,
        )

    async def stream(self, turns: Sequence[ConversationTurn], params: GenerationParams) -> AsyncIterator[str]:
        messages = as_payload(turns)
        if self.api_style == "ollama":
            async for token in self._stream_ollama(messages, params):
                yield token
            return
        if self.api_style == "openai":
            async for token in self._stream_openai(messages, params):
                yield token
            return
        yielded = False
        try:
            async for token in self._stream_openai(messages, params):
                yielded = True
                yield token
        except UpstreamRejected as exc:
            # Only an endpoint that does not exist is worth retrying as Ollama.
            if yielded or exc.status_code != 404:
                raise
            LOG.warning(
                "local_llm_stream_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            async for token in self._stream_ollama(messages, params):
                yield token

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        message = body
        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict):
                err = parsed.get("error")
                if isinstance(err, dict):
                    message = str(err.get("message") or body)
                elif err:
                    message = str(err)
        except json.JSONDecodeError:
            pass
        raise _status_error(resp.status_code, message.strip(), resp.headers)

    async def _stream_openai(self, messages: List[Dict[str, str]], params: GenerationParams) -> AsyncIterator[str]:
        LOG.debug("local_llm_stream", extra={"model": params.model or self.model, "base_url": self.base_url})
        payload = {
            "model": params.model or self.model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "stream": True,
        }
        finished = False
        try:
            async with self._client.stream("POST", "/v1/chat/completions", json=payload) as resp:
                await self._raise_for_status(resp)
                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        finished = True
                        break
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError as exc:
                        raise UpstreamTransportFailure("Malformed upstream payload") from exc
                    if parsed.get("error"):
                        raise UpstreamTransportFailure(str(parsed["error"]))
                    choice = (parsed.get("choices") or [{}])[0]
                    token = (choice.get("delta") or {}).get("content") or ""
                    if token:
                        yield token
                    if choice.get("finish_reason"):
                        finished = True
        except httpx.HTTPError as exc:
            raise UpstreamTransportFailure(str(exc) or exc.__class__.__name__) from exc
        if not finished:
            raise UpstreamTransportFailure("Upstream stream ended before completion")

    async def _stream_ollama(self, messages: List[Dict[str, str]], params: GenerationParams) -> AsyncIterator[str]:
        payload = {
            "model": params.model or self.model,
            "prompt": self._messages_to_prompt(messages),
            "stream": True,
            "options": {"temperature": params.temperature, "num_predict": params.max_tokens},
        }
        LOG.debug("local_llm_stream_ollama", extra={"model": payload["model"], "base_url": self.base_url})
        finished = False
        try:
            async with self._client.stream("POST", "/api/generate", json=payload) as resp:
                await self._raise_for_status(resp)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise UpstreamTransportFailure("Malformed upstream payload") from exc
                    if data.get("error"):
                        raise UpstreamTransportFailure(str(data["error"]))
                    token = data.get("response") or ""
                    if token:
                        yield token
                    if data.get("done"):
                        finished = True
                        break
        except httpx.HTTPError as exc:
            raise UpstreamTransportFailure(str(exc) or exc.__class__.__name__) from exc
        if not finished:
            raise UpstreamTransportFailure("Upstream stream ended before completion")

    @staticmethod
    def _messages_to_prompt(messages: List[Dict[str, str]]) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            content = msg.get("content") or ""
            parts.append(f"{role}: {content}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)

    async def aclose(self) -> None:
        await self._client.aclose()


class OfflineProvider:
    """Deterministic reply used when no model provider is configured."""

    name = "offline"

    def __init__(self, model: str = "offline") -> None:
        self.model = model

    @staticmethod
    def compose_reply(turns: Sequence[ConversationTurn]) -> str:
        last_user = ""
        for turn in reversed(turns):
            if turn.role == "user" and turn.content.strip():
                last_user = turn.content.strip()
                break
        lines = ["I apologize, but I was unable to reach a language model for this reply."]
        if last_user:
            first_line = last_user.splitlines()[0]
            if len(first_line) > 180:
                first_line = first_line[:177] + "…"
            lines.append(f"You asked: {first_line}")
        lines.append("Set OPENAI_API_KEY or LOCAL_BASE_URL to enable generated answers.")
        return "\n".join(lines)

    def stream(self, turns: Sequence[ConversationTurn], params: GenerationParams) -> AsyncIterator[str]:
        words = re.findall(r"\S+\s*", self.compose_reply(turns))
        return iter_as_async(words)

    async def aclose(self) -> None:
        return None


def provider_from_selection(selection: ProviderSelection) -> CompletionProvider:
    if selection.family == "openai":
        return OpenAIProvider(
            name=selection.name,
            model=selection.model,
            api_key=selection.api_key,
            base_url=selection.base_url,
        )
    if selection.family == "local":
        return LocalProvider(
            base_url=selection.base_url or "http://127.0.0.1:11434",
            model=selection.model,
            api_style=selection.api_style,
            api_key=selection.api_key,
        )
    return OfflineProvider(model=selection.model)


def build_provider(settings: Settings) -> CompletionProvider:
    router = ModelRouter(settings.env or None)
    selection = router.select_provider(settings.provider, model_hint=settings.model)
    logger.info(
        "Using completion provider name=%s model=%s base_url=%s",
        selection.name,
        selection.model,
        selection.base_url,
    )
    return provider_from_selection(selection)
