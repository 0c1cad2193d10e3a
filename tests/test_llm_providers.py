from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from storyspine.exceptions import TransientError
from storyspine.llm import AnthropicBackend, OllamaBackend, OpenAIBackend, create_chat_backend
from storyspine.llm.backends import Message


def _attach(backend, handler):
    backend._client = httpx.AsyncClient(base_url=backend.base_url, transport=httpx.MockTransport(handler))
    return backend


PROMPT = [
    Message("system", "你是剧情摘要器"),
    Message("user", "第一段"),
    Message("user", "第二段"),
    Message("assistant", '{"events":[ '),
]


def test_openai_payload_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "model": "qwen",
            "choices": [{"message": {"content": "]}"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3},
        })

    backend = _attach(OpenAIBackend(api_key="k", base_url="https://api.example/v1/"), handler)
    resp = asyncio.run(backend.chat(PROMPT, temperature=0.1, json_mode=True))

    assert seen["path"] == "/v1/chat/completions"
    assert seen["body"]["temperature"] == 0.1
    assert seen["body"]["messages"][-1] == {"role": "assistant", "content": '{"events":[ '}
    # prefill and json_object mode do not mix
    assert "response_format" not in seen["body"]
    assert (resp.content, resp.model, resp.finish_reason) == ("]}", "qwen", "stop")
    assert backend.stats == {"calls": 1, "input_tokens": 12, "output_tokens": 3, "total_tokens": 15}


def test_anthropic_folds_turns_and_strips_prefill():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "]}"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 7, "output_tokens": 2},
        })

    backend = _attach(AnthropicBackend(api_key="k"), handler)
    resp = asyncio.run(backend.chat(PROMPT))

    body = seen["body"]
    assert body["system"] == "你是剧情摘要器"
    assert body["messages"] == [
        {"role": "user", "content": "第一段\n\n第二段"},
        {"role": "assistant", "content": '{"events":['},
    ]
    assert resp.content == "]}"
    assert resp.model == backend.model
    assert backend.stats["total_tokens"] == 9


def test_ollama_needs_no_key_and_sets_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"content": "{}"}, "prompt_eval_count": 4, "eval_count": 1})

    backend = _attach(OllamaBackend(max_tokens=256), handler)
    resp = asyncio.run(backend.chat([Message("user", "hi")], json_mode=True))
    assert seen["body"]["format"] == "json"
    assert seen["body"]["options"] == {"temperature": 0.3, "num_predict": 256}
    assert resp.content == "{}"


def test_http_errors_are_transient():
    backend = _attach(OpenAIBackend(api_key="k"), lambda request: httpx.Response(429, json={"error": "slow down"}))
    with pytest.raises(TransientError):
        asyncio.run(backend.chat([Message("user", "hi")]))
    assert backend.stats["calls"] == 0


def test_missing_key_is_reported_on_first_call(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    backend = create_chat_backend("claude")
    assert isinstance(backend, AnthropicBackend)
    with pytest.raises(RuntimeError):
        asyncio.run(backend.chat([Message("user", "hi")]))

    with pytest.raises(ValueError):
        create_chat_backend("carrier-pigeon")
