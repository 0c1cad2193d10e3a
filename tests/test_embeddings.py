from __future__ import annotations

import asyncio
import json

import httpx
import numpy as np
import pytest

from storyspine.config import EmbeddingConfig
from storyspine.embeddings import HashEmbedder, OllamaEmbedder, OpenAICompatibleEmbedder, create_embedder
from storyspine.embeddings.backends import parse_api_keys
from storyspine.exceptions import TransientError


def _attach(embedder, handler):
    embedder._client = httpx.AsyncClient(base_url=embedder.base_url, transport=httpx.MockTransport(handler))
    return embedder


def test_hash_embedder_is_deterministic_and_normalized():
    emb = HashEmbedder(16)
    assert emb.dims == 32
    assert emb.fingerprint() == "hash:blake2b:32"

    a, b, c = asyncio.run(emb.embed(["酒馆里的Bob", "酒馆里的Bob", "city gate"]))
    assert np.allclose(a, b)
    assert abs(float(np.linalg.norm(a)) - 1.0) < 1e-5
    assert float(a @ c) < float(a @ b)
    assert not asyncio.run(emb.embed_single("。。。")).any()
    assert asyncio.run(emb.embed([])).shape == (0, 32)


def test_api_keys_rotate_per_request():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        texts = json.loads(request.content)["input"]
        # out of order on purpose; results are sorted by index
        data = [{"index": i, "embedding": [float(i)] * 4} for i in reversed(range(len(texts)))]
        return httpx.Response(200, json={"data": data})

    emb = _attach(OpenAICompatibleEmbedder(api_key="k-one, k-two", dims=4), handler)
    arr = asyncio.run(emb.embed(["a", "b"]))
    asyncio.run(emb.embed(["c"]))
    asyncio.run(emb.embed(["d"]))

    assert arr[:, 0].tolist() == [0.0, 1.0]
    assert seen == ["Bearer k-one", "Bearer k-two", "Bearer k-one"]
    assert emb.fingerprint() == "siliconflow:bge-m3:4"
    assert parse_api_keys("a;b|c\n d ,") == ["a", "b", "c", "d"]


def test_short_batches_and_http_errors_are_transient():
    emb = _attach(OpenAICompatibleEmbedder(api_key="k", dims=4), lambda r: httpx.Response(200, json={"data": []}))
    with pytest.raises(TransientError):
        asyncio.run(emb.embed(["a"]))

    emb = _attach(OllamaEmbedder(dims=4), lambda r: httpx.Response(503))
    with pytest.raises(TransientError):
        asyncio.run(emb.embed(["a"]))


def test_ollama_embeds_one_batch_per_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((request.url.path, body["input"]))
        return httpx.Response(200, json={"embeddings": [[1.0, 0.0]] * len(body["input"])})

    emb = _attach(OllamaEmbedder(dims=2), handler)
    assert asyncio.run(emb.embed(["a", "b", "c"])).shape == (3, 2)
    assert calls == [("/api/embed", ["a", "b", "c"])]


def test_create_embedder_by_provider():
    assert isinstance(create_embedder(EmbeddingConfig(provider="hash", dims=64)), HashEmbedder)
    assert isinstance(create_embedder(EmbeddingConfig(provider="local")), OllamaEmbedder)
    openai = create_embedder(EmbeddingConfig(provider="openai", api_key="k", model="text-embedding-3-small"))
    assert openai.fingerprint().startswith("openai:text-embedding-3-small:")
    with pytest.raises(ValueError):
        create_embedder(EmbeddingConfig(provider="word2vec"))
