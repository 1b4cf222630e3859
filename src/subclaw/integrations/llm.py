"""Chat-with-tools provider over OpenAI-compatible HTTP endpoints.

The engine only sees ``ChatProvider.chat(messages, tools, model=..., ...)``
returning a ``ChatResult``.  ``ProviderRouter`` picks the concrete
endpoint from a ``provider/model`` selector.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx

from subclaw.core.config import ProviderConfig

logger = logging.getLogger("subclaw.llm")

DEFAULT_TEMPERATURE = 0.3

# Max output tokens per model
MODEL_MAX_TOKENS: Dict[str, int] = {
    "claude-opus-4-6": 16384,
    "claude-opus-4-20250514": 16384,
    "claude-sonnet-4-20250514": 16384,
    "claude-sonnet-4-5-20250514": 16384,
    "claude-haiku-3-5-20241022": 8192,
    "gemini-2.5-pro": 65536,
    "gemini-2.5-flash": 65536,
    "gemini-2.5": 65536,
    "gpt-5.1-codex": 32768,
    "gpt-4o": 16384,
    "gpt-4o-mini": 16384,
    "gpt-4": 8192,
    "o3-mini": 16384,
}

EXECUTION_MAX_TOKENS = 16384
PLANNING_MAX_TOKENS = 4096
SUMMARY_MAX_TOKENS = 8192

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504, 529}
_TRANSIENT_PATTERN = re.compile(
    r"529|overload|rate.?limit|timeout|timed out|ECONNRESET|ETIMEDOUT|connection reset|503|502",
    re.IGNORECASE,
)


def max_tokens_for(model: str, fallback: int = 8192) -> int:
    return MODEL_MAX_TOKENS.get(model, fallback)


def parse_model(selector: str) -> tuple[str, str]:
    """Split a model selector into ``(provider, model)``."""
    if "/" in selector:
        provider, _, model = selector.partition("/")
        return provider, model
    if selector.startswith("claude"):
        return "anthropic", selector
    if selector.startswith(("gpt", "o1", "o3")):
        return "openai", selector
    if selector.startswith("gemini"):
        return "google", selector
    if selector.startswith("grok"):
        return "grok", selector
    if selector.startswith("deepseek"):
        return "deepseek", selector
    return "anthropic", selector


# ── Errors ───────────────────────────────────────────────────

class ProviderError(RuntimeError):
    """A failed provider call; ``transient`` failures may be retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, transient: Optional[bool] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        if transient is None:
            transient = status_code in TRANSIENT_STATUS_CODES if status_code else False
        self.transient = transient


def is_transient(exc: BaseException) -> bool:
    """Classify a provider failure as retryable (rate-limit/overload/timeout/5xx)."""
    if isinstance(exc, ProviderError):
        if exc.transient or exc.status_code in TRANSIENT_STATUS_CODES:
            return True
        if exc.status_code is not None:
            return False
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return bool(_TRANSIENT_PATTERN.search(str(exc)))


# ── Results ──────────────────────────────────────────────────

@dataclass
class ToolCall:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResult:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tokens_used: int = 0


class ChatProvider(Protocol):
    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        model: str,
        max_tokens: int = 4096,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResult: ...


def to_openai_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert ``{name, description, input_schema}`` definitions to function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": str(raw)}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


# ── HTTP client ──────────────────────────────────────────────

class OpenAICompatibleClient:
    """``/chat/completions`` client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        model: str,
        max_tokens: int = 4096,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResult:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
        url = f"{self.base_url}/chat/completions"
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            resp = client.post(url, json=payload, headers=self._headers())
        if resp.status_code != 200:
            raise ProviderError(
                f"{resp.status_code} from {model}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(f"Empty response from {model}")
        message = choices[0].get("message") or {}
        calls = [
            ToolCall(
                id=str(c.get("id") or f"call_{idx}"),
                name=(c.get("function") or {}).get("name", ""),
                input=_parse_arguments((c.get("function") or {}).get("arguments")),
            )
            for idx, c in enumerate(message.get("tool_calls") or [])
        ]
        usage = data.get("usage") or {}
        return ChatResult(
            text=message.get("content") or "",
            tool_calls=calls,
            tokens_used=int(usage.get("total_tokens") or 0),
        )


class ProviderRouter:
    """Dispatches ``chat`` calls to the endpoint named by the model selector."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._clients: Dict[str, OpenAICompatibleClient] = {
            name: OpenAICompatibleClient(cfg.base_url, cfg.api_key, transport=transport)
            for name, cfg in providers.items()
        }

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        model: str,
        max_tokens: int = 4096,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResult:
        provider, model_name = parse_model(model)
        client = self._clients.get(provider)
        if client is None:
            raise ProviderError(f"Unknown provider: {provider}", transient=False)
        logger.debug("chat -> %s/%s (%d messages)", provider, model_name, len(messages))
        return client.chat(
            messages,
            tools,
            model=model_name,
            max_tokens=max_tokens,
            temperature=temperature,
        )
