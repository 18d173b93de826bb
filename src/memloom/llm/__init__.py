"""LLM client interfaces and provider implementations."""

from memloom.config import LLMConfig
from memloom.llm.providers import (
    ChatBackend,
    ChatMessage,
    ChatResponse,
    JSONSchemaFormat,
    OllamaBackend,
    OpenAIBackend,
)
from memloom.llm.structured import StructuredCompletionClient


def create_chat_backend(provider: str | None = None, config: LLMConfig | None = None) -> ChatBackend:
    cfg = config or LLMConfig()
    p = (provider or cfg.provider or "openai").strip().lower()
    if p in {"openai", "default"}:
        return OpenAIBackend(
            api_key=cfg.openai_api_key,
            model=cfg.openai_model,
            base_url=cfg.openai_base_url,
            timeout=cfg.timeout,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        )
    if p in {"ollama", "local"}:
        return OllamaBackend(
            model=cfg.ollama_model,
            base_url=cfg.ollama_base_url,
            timeout=cfg.timeout,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            keep_alive=cfg.ollama_keep_alive,
        )
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "ChatBackend",
    "ChatMessage",
    "ChatResponse",
    "JSONSchemaFormat",
    "OllamaBackend",
    "OpenAIBackend",
    "StructuredCompletionClient",
    "create_chat_backend",
]
