"""Embedding backends.

Every backend reports a ``fingerprint()``; vectors stored under one
fingerprint are never compared with queries embedded under another.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Any, Protocol, runtime_checkable

import httpx
import numpy as np

from storyspine.config import EmbeddingConfig
from storyspine.exceptions import TransientError

logger = logging.getLogger(__name__)

_KEY_SPLIT_RE = re.compile(r"[,;|\n]+")


@runtime_checkable
class EmbeddingBackend(Protocol):
    dims: int

    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    def fingerprint(self) -> str: ...
    async def close(self) -> None: ...


def parse_api_keys(raw: str) -> list[str]:
    """Split a key list separated by commas, semicolons, pipes or newlines."""
    return [k.strip() for k in _KEY_SPLIT_RE.split(raw or "") if k.strip()]


def _mask(key: str) -> str:
    return key[:6] + "***" + key[-4:] if len(key) > 10 else "***"


class _HTTPEmbedder:
    """Client lifecycle and shape checks shared by remote embedders."""

    def __init__(self, model: str, dims: int, base_url: str, timeout: float) -> None:
        self.model = model
        self.dims = dims
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        try:
            resp = await self._client.post(path, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientError(f"{type(self).__name__} request failed: {e}") from e

    async def _vectors(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        arr = np.asarray(await self._vectors(texts), dtype=np.float32)
        if arr.ndim != 2 or arr.shape[0] != len(texts):
            raise TransientError(f"embedding count mismatch: expected {len(texts)}, got {arr.shape[0] if arr.ndim else 0}")
        if arr.shape[1] != self.dims:
            logger.warning("%s returned %d dims, configured %d", self.model, arr.shape[1], self.dims)
        return arr

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAICompatibleEmbedder(_HTTPEmbedder):
    """``/embeddings`` client for OpenAI-style providers (SiliconFlow, OpenAI).

    Several API keys rotate round-robin, one per request.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "BAAI/bge-m3",
        dims: int = 1024,
        base_url: str = "https://api.siliconflow.cn/v1",
        timeout: float = 30.0,
        provider: str = "siliconflow",
    ) -> None:
        super().__init__(model, dims, base_url, timeout)
        self.api_keys = parse_api_keys(api_key if api_key is not None else os.environ.get("STORYSPINE_EMBED_API_KEY", ""))
        self.provider = provider
        self._key_index = 0

    def fingerprint(self) -> str:
        short = self.model.split("/")[-1].lower()
        return f"{self.provider}:{short}:{self.dims}"

    def _next_key(self) -> str:
        if not self.api_keys:
            raise RuntimeError("an embedding API key is required (STORYSPINE_EMBED_API_KEY)")
        idx = self._key_index % len(self.api_keys)
        self._key_index = (idx + 1) % len(self.api_keys)
        key = self.api_keys[idx]
        if len(self.api_keys) > 1:
            logger.debug("embedding with key %d/%d: %s", idx + 1, len(self.api_keys), _mask(key))
        return key

    async def _vectors(self, texts: list[str]) -> list[list[float]]:
        data = await self._post(
            "/embeddings",
            {"model": self.model, "input": texts, "encoding_format": "float"},
            headers={"Authorization": f"Bearer {self._next_key()}"},
        )
        items = sorted(data.get("data") or [], key=lambda x: x.get("index", 0))
        return [x["embedding"] for x in items]


class OllamaEmbedder(_HTTPEmbedder):
    """Local Ollama ``/api/embed``; one request per batch."""

    def __init__(
        self,
        model: str = "bge-m3",
        dims: int = 1024,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(model, dims, base_url, timeout)

    def fingerprint(self) -> str:
        return f"ollama:{self.model}:{self.dims}"

    async def _vectors(self, texts: list[str]) -> list[list[float]]:
        data = await self._post("/api/embed", {"model": self.model, "input": texts})
        return data.get("embeddings") or []


class HashEmbedder:
    """Deterministic local embedder using signed feature hashing (no network).

    Latin words and single CJK characters are features, plus each adjacent
    pair, so short Chinese phrases sharing characters land close together.
    """

    _TOKEN_RE = re.compile(r"[a-z0-9_]+|[\u4e00-\u9fff]")

    def __init__(self, dims: int = 384) -> None:
        self.dims = max(32, int(dims))

    def fingerprint(self) -> str:
        return f"hash:blake2b:{self.dims}"

    def _features(self, text: str) -> list[str]:
        tokens = self._TOKEN_RE.findall((text or "").lower())
        return tokens + [a + "_" + b for a, b in zip(tokens, tokens[1:])]

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        features = self._features(text)
        if not features:
            return vec
        digests = [hashlib.blake2b(f.encode("utf-8"), digest_size=8).digest() for f in features]
        slots = np.array([int.from_bytes(d[:4], "little") % self.dims for d in digests])
        signs = np.array([-1.0 if d[4] & 1 else 1.0 for d in digests], dtype=np.float32)
        np.add.at(vec, slots, signs)
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0.0 else vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        return np.stack([self._encode(t) for t in texts])

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


def create_embedder(cfg: EmbeddingConfig) -> EmbeddingBackend:
    provider = (cfg.provider or "siliconflow").strip().lower()
    if provider in {"siliconflow", "default", "openai"}:
        api_key = cfg.api_key
        if provider == "openai" and not api_key:
            api_key = os.environ.get("OPENAI_API_KEY", "")
        return OpenAICompatibleEmbedder(
            api_key=api_key,
            model=cfg.model,
            dims=cfg.dims,
            base_url=cfg.base_url,
            timeout=cfg.timeout,
            provider="openai" if provider == "openai" else "siliconflow",
        )
    if provider in {"ollama", "local"}:
        return OllamaEmbedder(model=cfg.model, dims=cfg.dims, base_url=cfg.base_url, timeout=cfg.timeout)
    if provider == "hash":
        return HashEmbedder(dims=cfg.dims)
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
