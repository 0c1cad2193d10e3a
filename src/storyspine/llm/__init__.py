"""LLM client interfaces and provider implementations."""

from storyspine.config import LLMConfig
from storyspine.llm.backends import ChatBackend, ChatResponse, HTTPChatBackend, Message
from storyspine.llm.providers import AnthropicBackend, OllamaBackend, OpenAIBackend


def create_chat_backend(provider: str = "openai", **kwargs):
    p = (provider or "openai").strip().lower()
    if p in {"openai", "default", "siliconflow", "openai-compatible"}:
        return OpenAIBackend(**kwargs)
    if p in {"anthropic", "claude"}:
        return AnthropicBackend(**kwargs)
    if p in {"ollama", "local"}:
        return OllamaBackend(**kwargs)
    raise ValueError(f"Unsupported provider: {provider}")


def chat_backend_from_config(cfg: LLMConfig):
    return create_chat_backend(
        cfg.provider,
        api_key=cfg.api_key or None,
        model=cfg.model,
        base_url=cfg.base_url,
        timeout=cfg.timeout,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
    )


__all__ = [
    "ChatBackend",
    "HTTPChatBackend",
    "OpenAIBackend",
    "AnthropicBackend",
    "OllamaBackend",
    "Message",
    "ChatResponse",
    "create_chat_backend",
    "chat_backend_from_config",
]
