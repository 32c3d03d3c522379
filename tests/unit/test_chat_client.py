from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from citriage.agents.tools import TOOL_SPECS
from citriage.llm.chat_client import ChatCompletionsClient, parse_json_content


def test_complete_sends_openai_compatible_payload() -> None:
    seen: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer k"
        seen.append(json.loads(request.content.decode("utf-8")))
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": None, "tool_calls": [{"id": "c1"}]}}]},
        )

    c = ChatCompletionsClient(api_key="k", model="m", transport=httpx.MockTransport(handler))
    msg = c.complete(messages=[{"role": "user", "content": "hi"}], tools=TOOL_SPECS, json_mode=True)

    assert msg["tool_calls"] == [{"id": "c1"}]
    body = seen[0]
    assert body["model"] == "m"
    assert body["temperature"] == 0
    assert body["tool_choice"] == "auto"
    assert {t["function"]["name"] for t in body["tools"]} == {"list_pr_files", "fetch_slice", "code_search"}
    assert body["response_format"] == {"type": "json_object"}


def test_complete_raises_on_http_error() -> None:
    c = ChatCompletionsClient(
        api_key="k", model="m", transport=httpx.MockTransport(lambda r: httpx.Response(500, text="upstream down"))
    )
    with pytest.raises(RuntimeError, match="llm_http_500"):
        c.complete(messages=[{"role": "user", "content": "hi"}])


def test_complete_raises_on_unexpected_shape() -> None:
    c = ChatCompletionsClient(api_key="k", model="m", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    with pytest.raises(RuntimeError, match="llm_response_parse_error"):
        c.complete(messages=[])


def test_parse_json_content_variants() -> None:
    assert parse_json_content('{"a": 1}') == {"a": 1}
    assert parse_json_content('```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_content('Here you go:\n{"a": 3}\nThanks') == {"a": 3}
    assert parse_json_content({"a": 4}) == {"a": 4}
    with pytest.raises(ValueError):
        parse_json_content("no json here")
    with pytest.raises(ValueError):
        parse_json_content("[1, 2]")
