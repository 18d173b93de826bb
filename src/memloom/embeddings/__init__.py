"""Embedding providers and the batching/retry client."""

from memloom.embeddings.backends import (
    DashscopeEmbedder,
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    create_embedder,
)
from memloom.embeddings.client import EmbeddingClient
from memloom.embeddings.retry import RetryPolicy, call_with_retry, is_retryable

__all__ = [
    "DashscopeEmbedder",
    "EmbeddingBackend",
    "EmbeddingClient",
    "HashEmbedder",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "RetryPolicy",
    "call_with_retry",
    "create_embedder",
    "is_retryable",
]
