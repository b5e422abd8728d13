from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence
import json
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import get_settings
from ..domain.chat_models import ChatMessage, GenerationConfig, Role
from ..domain.errors import ProviderFailure


LOG = logging.getLogger("linkchat.llm")

FragmentCallback = Callable[[str], None]


class CompletionClient(Protocol):
    def complete(
        self,
        prompt: str,
        window: Sequence[ChatMessage],
        config: GenerationConfig,
        image: Optional[str] = None,
    ) -> str: ...

    def stream(
        self,
        prompt: str,
        window: Sequence[ChatMessage],
        config: GenerationConfig,
        on_fragment: FragmentCallback,
        image: Optional[str] = None,
    ) -> str: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _message_content(text: str, image: Optional[str]) -> str | List[Dict[str, Any]]:
    if not image:
        return text or ""
    parts: List[Dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    parts.append(
        {
            "type": "image_url",
            "image_url": {"url": f"data:image/png;base64,{image}", "detail": "auto"},
        }
    )
    return parts


def build_messages(
    prompt: str,
    window: Sequence[ChatMessage],
    config: GenerationConfig,
    image: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Provider message list: system prompt, the context window, then the prompt itself."""
    messages: List[Dict[str, Any]] = []
    if config.system_prompt and config.system_prompt.strip():
        messages.append({"role": "system", "content": config.system_prompt})
    for message in window:
        role = "user" if message.role == Role.USER else "assistant"
        messages.append({"role": role, "content": _message_content(message.content, message.image)})
    messages.append({"role": "user", "content": _message_content(prompt, image)})
    return messages


def _error_message(data: Dict[str, Any]) -> Optional[str]:
    err = data.get("error")
    if not err:
        return None
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def iter_sse_fragments(lines: Iterator[Any]) -> Iterator[str]:
    """Yield ``choices[0].delta.content`` values from server-sent-event lines."""
    for raw_line in lines:
        if not raw_line:
            continue
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        line = line.strip()
        if not line or line.startswith(":"):
            continue
        data = line[5:].strip() if line.startswith("data:") else line
        if data == "[DONE]":
            break
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            LOG.debug("sse_chunk_unparsed", extra={"chunk": data[:120]})
            continue
        if not isinstance(parsed, dict):
            continue
        message = _error_message(parsed)
        if message:
            raise ProviderFailure(message)
        delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
        token = delta.get("content") or ""
        if token:
            yield token


class OpenRouterClient:
    """Blocking client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/") if base_url else None
        self._session = session or _build_session()

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else get_settings().openrouter_api_key

    @property
    def base_url(self) -> str:
        return self._base_url or get_settings().openrouter_base_url

    def _headers(self) -> Dict[str, str]:
        key = self.api_key
        if not key:
            LOG.error("llm_not_configured")
            raise ProviderFailure(
                "OpenRouter API key is not configured. Please set the OPENROUTER_API_KEY environment variable."
            )
        return {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "X-Title": "LinkChat",
        }

    def _payload(
        self,
        prompt: str,
        window: Sequence[ChatMessage],
        config: GenerationConfig,
        image: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.ai_model,
            "messages": build_messages(prompt, window, config, image),
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
        }
        if stream:
            payload["stream"] = True
        return payload

    def _timeout(self) -> tuple[int, int]:
        settings = get_settings()
        return (settings.llm_connect_timeout, settings.llm_read_timeout)

    def complete(
        self,
        prompt: str,
        window: Sequence[ChatMessage],
        config: GenerationConfig,
        image: Optional[str] = None,
    ) -> str:
        headers = self._headers()
        payload = self._payload(prompt, window, config, image, stream=False)
        LOG.info(
            "llm_invoke",
            extra={"model": config.ai_model, "messages": len(payload["messages"]), "base_url": self.base_url},
        )
        try:
            resp = self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self._timeout(),
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.RequestException as exc:
            LOG.warning("llm_invoke_failed", extra={"err": str(exc)})
            raise ProviderFailure(f"OpenRouter API call failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderFailure("OpenRouter API returned an unreadable response") from exc

        message = _error_message(data) if isinstance(data, dict) else None
        if message:
            raise ProviderFailure(f"OpenRouter API call failed: {message}")
        choices = (data.get("choices") if isinstance(data, dict) else None) or []
        text = ""
        if choices:
            text = ((choices[0] or {}).get("message") or {}).get("content") or ""
        if not text.strip():
            raise ProviderFailure("OpenRouter API returned empty response")
        LOG.info("llm_invoke_succeeded", extra={"model": config.ai_model, "chars": len(text)})
        return text

    def stream(
        self,
        prompt: str,
        window: Sequence[ChatMessage],
        config: GenerationConfig,
        on_fragment: FragmentCallback,
        image: Optional[str] = None,
    ) -> str:
        headers = self._headers()
        payload = self._payload(prompt, window, config, image, stream=True)
        LOG.info("llm_stream", extra={"model": config.ai_model, "messages": len(payload["messages"])})
        collected: List[str] = []
        try:
            with self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self._timeout(),
                stream=True,
            ) as resp:
                resp.raise_for_status()
                for token in iter_sse_fragments(resp.iter_lines()):
                    collected.append(token)
                    on_fragment(token)
        except requests.exceptions.RequestException as exc:
            LOG.warning("llm_stream_failed", extra={"err": str(exc), "fragments": len(collected)})
            raise ProviderFailure(f"Streaming API call failed: {exc}") from exc
        LOG.info("llm_stream_completed", extra={"fragments": len(collected)})
        return "".join(collected)


_client: CompletionClient | None = None


def get_completion_client() -> CompletionClient:
    global _client
    if _client is None:
        _client = OpenRouterClient()
    return _client
