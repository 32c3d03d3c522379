from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from citriage.pipeline.retry import with_retry


class ChatModel(Protocol):
    """Anything that answers an OpenAI-style chat turn with one assistant message dict."""

    def complete(
        self,
        *,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        json_mode: bool = False,
    ) -> Dict[str, Any]: ...


def _is_transient_network_error(e: BaseException) -> bool:
    return isinstance(
        e,
        (httpx.ReadError, httpx.RemoteProtocolError, httpx.ProtocolError, httpx.ConnectError, httpx.TimeoutException),
    )


@dataclass(frozen=True)
class ChatCompletionsClient:
    """
    Calls an OpenAI-compatible chat completions API (OpenRouter, Groq, OpenAI, ...).

    Endpoint: POST {base_url}/chat/completions
    Returns the raw assistant message (`content` and optional `tool_calls`).
    """

    api_key: str
    model: str
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_s: float = 20.0
    max_tokens: int = 2048
    max_retries: int = 1
    retry_backoff_s: float = 0.8
    transport: httpx.BaseTransport | None = None

    def complete(
        self,
        *,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        json_mode: bool = False,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": int(max(1, min(int(self.max_tokens), 8192))),
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        def _post() -> Dict[str, Any]:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                r = client.post(url, headers=headers, json=payload)
                if r.status_code != 200:
                    raise RuntimeError(f"llm_http_{r.status_code}: {r.text[:1500]}")
                return r.json()

        data = with_retry(
            _post,
            is_retryable=_is_transient_network_error,
            max_attempts=self.max_retries,
            backoff=lambda attempt: self.retry_backoff_s * (2 ** (attempt - 1)),
        )
        try:
            msg = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise RuntimeError(f"llm_response_parse_error: {str(data)[:1500]}") from e
        return dict(msg or {})


_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*?)\n```\s*$", re.DOTALL)


def parse_json_content(content: Any) -> Dict[str, Any]:
    """
    Parse a JSON object out of an assistant `content` string. Tolerates a ```json fence
    and leading/trailing prose around a single top-level object.
    """
    if isinstance(content, dict):
        return content
    text = str(content or "").strip()
    m = _JSON_FENCE_RE.match(text)
    if m:
        text = m.group(1).strip()
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            raise ValueError(f"no JSON object in model output: {text[:200]!r}")
        obj = json.loads(text[start : end + 1])
    if not isinstance(obj, dict):
        raise ValueError("model output JSON is not an object")
    return obj
