"""Embedding backends."""

from storyspine.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAICompatibleEmbedder,
    create_embedder,
)

__all__ = [
    "EmbeddingBackend",
    "HashEmbedder",
    "OllamaEmbedder",
    "OpenAICompatibleEmbedder",
    "create_embedder",
]
