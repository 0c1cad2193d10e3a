"""Chat providers (OpenAI-compatible, Anthropic, Ollama).

Each provider only maps ``Message`` lists onto its wire format. A trailing
assistant message is a prefill: the model continues it, and the returned
content excludes the prefill text.
"""

from __future__ import annotations

from typing import Any

from storyspine.llm.backends import ChatResponse, HTTPChatBackend, Message


class OpenAIBackend(HTTPChatBackend):
    """Any ``/chat/completions`` endpoint (OpenAI, SiliconFlow, DeepSeek...)."""

    key_env = "OPENAI_API_KEY"

    def __init__(self, base_url: str = "https://api.openai.com/v1", model: str = "gpt-4.1-mini", **kwargs: Any) -> None:
        super().__init__(base_url, model=model, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _payload(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        # json_object mode rejects a trailing assistant prefill on most gateways
        if json_mode and not (messages and messages[-1].role == "assistant"):
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _response(self, data):  # noqa: ANN001
        choice = (data.get("choices") or [{}])[0]
        usage = data.get("usage") or {}
        response = ChatResponse(
            content=str((choice.get("message") or {}).get("content") or ""),
            model=str(data.get("model") or ""),
            usage=usage,
            finish_reason=str(choice.get("finish_reason") or ""),
            raw=data,
        )
        return response, usage.get("prompt_tokens"), usage.get("completion_tokens")


def _anthropic_turns(messages: list[Message]) -> tuple[str, list[dict[str, str]]]:
    """Split out system text and fold consecutive same-role turns."""
    system: list[str] = []
    turns: list[dict[str, str]] = []
    for m in messages:
        if m.role == "system":
            system.append(m.content)
            continue
        role = "assistant" if m.role == "assistant" else "user"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + m.content
        else:
            turns.append({"role": role, "content": m.content})
    if turns and turns[-1]["role"] == "assistant":
        # the API rejects a prefill ending in whitespace
        turns[-1]["content"] = turns[-1]["content"].rstrip()
    return "\n".join(system), turns


class AnthropicBackend(HTTPChatBackend):
    endpoint = "/messages"
    key_env = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com/v1",
        model: str = "claude-3-5-sonnet-latest",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, model=model, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    def _payload(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        system, turns = _anthropic_turns(messages)
        if json_mode:
            system = (system + "\nRespond with strict JSON only.").strip()
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": turns,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            payload["system"] = system
        return payload

    def _response(self, data):  # noqa: ANN001
        text = "".join(
            str(block.get("text", ""))
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        response = ChatResponse(
            content=text,
            model=str(data.get("model") or ""),
            usage=usage,
            finish_reason=str(data.get("stop_reason") or ""),
            raw=data,
        )
        return response, usage.get("input_tokens"), usage.get("output_tokens")


class OllamaBackend(HTTPChatBackend):
    """Local ``/api/chat``; no key needed."""

    endpoint = "/api/chat"

    def __init__(self, base_url: str = "http://127.0.0.1:11434", model: str = "qwen2.5:14b-instruct", **kwargs: Any) -> None:
        super().__init__(base_url, model=model, **kwargs)

    def _payload(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_mode:
            payload["format"] = "json"
        return payload

    def _response(self, data):  # noqa: ANN001
        response = ChatResponse(
            content=str((data.get("message") or {}).get("content") or ""),
            model=str(data.get("model") or ""),
            finish_reason=str(data.get("done_reason") or ""),
            raw=data,
        )
        return response, data.get("prompt_eval_count"), data.get("eval_count")
