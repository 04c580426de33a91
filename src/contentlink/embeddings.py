"""Text embedding models and vector utilities.

Provides the embedding side of vector confirmation: an ``EmbeddingModel``
interface with a deterministic mock and an HTTP API-backed implementation
(OpenAI-compatible ``/v1/embeddings``), plus ``AssertionEmbedder`` for
backfilling assertion embeddings into a ``ContentStore``.

All vectors are ``bytes`` holding little-endian float32 arrays, the same
encoding the store keeps in ``content_assertions.embedding``.
"""
from __future__ import annotations

import hashlib
import logging
import math
import os
import struct
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Any

import orjson
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

log = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """The embedding service returned an unusable response."""


# ---------------------------------------------------------------------------
# Vector utilities
# ---------------------------------------------------------------------------

FLOAT32_WIDTH = 4


def floats_to_bytes(floats: list[float]) -> bytes:
    """Pack a vector as little-endian float32, the stored embedding format."""
    return struct.pack(f"<{len(floats)}f", *floats)


def bytes_to_floats(data: bytes) -> list[float]:
    """Unpack a stored embedding.

    Raises ValueError for an empty or truncated buffer, or one holding
    NaN or infinite components.
    """
    if not data:
        raise ValueError("Empty embedding vector")
    dims, rest = divmod(len(data), FLOAT32_WIDTH)
    if rest:
        raise ValueError(f"Byte length {len(data)} is not a multiple of {FLOAT32_WIDTH}")
    values = list(struct.unpack(f"<{dims}f", data))
    if not all(math.isfinite(v) for v in values):
        raise ValueError("Embedding vector has non-finite components")
    return values


def cosine_similarity(a: bytes, b: bytes) -> float:
    """Cosine similarity of an item vector and an assertion vector.

    Clamped to [-1.0, 1.0]; 0.0 when either vector has zero length.
    Raises ValueError when the vectors cannot be compared.
    """
    if len(a) != len(b):
        raise ValueError(
            f"Dimension mismatch: {len(a) // FLOAT32_WIDTH} vs {len(b) // FLOAT32_WIDTH}"
        )
    va = bytes_to_floats(a)
    vb = bytes_to_floats(b)

    norm_a = math.sqrt(math.fsum(x * x for x in va))
    norm_b = math.sqrt(math.fsum(y * y for y in vb))
    if norm_a < 1e-10 or norm_b < 1e-10:
        return 0.0

    dot = math.fsum(x * y for x, y in zip(va, vb, strict=True))
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def text_hash(text: str) -> str:
    """SHA-256 of the embedded text, stored alongside the vector."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Embedding model interface
# ---------------------------------------------------------------------------

class EmbeddingModel(ABC):
    """Abstract interface for generating text embeddings."""

    @abstractmethod
    def embed(self, texts: list[str]) -> list[bytes]:
        """Generate embeddings for a batch of texts.

        Returns one float32 byte vector per input text, all same dimension.
        """

    @abstractmethod
    def model_version(self) -> str:
        """Return the model version string (e.g., 'text-embedding-3-small')."""

    @abstractmethod
    def dimensions(self) -> int:
        """Return the embedding dimension."""

    def embed_text(self, text: str) -> bytes:
        """Embed a single text with one call."""
        vectors = self.embed([text])
        if len(vectors) != 1:
            raise EmbeddingError(f"Expected 1 vector, got {len(vectors)}")
        return vectors[0]


class MockEmbeddingModel(EmbeddingModel):
    """Deterministic mock model for tests and offline runs.

    Builds an L2-normalized vector from the SHA-256 digest of the text, so
    identical texts embed identically and unrelated texts are roughly
    uncorrelated.
    """

    def __init__(self, dim: int = 64, version: str = "mock-v1") -> None:
        self._dim = dim
        self._version = version

    def embed(self, texts: list[str]) -> list[bytes]:
        results: list[bytes] = []
        for t in texts:
            h = hashlib.sha256(t.encode("utf-8")).digest()
            floats = [(h[i % len(h)] / 127.5) - 1.0 for i in range(self._dim)]
            norm = math.sqrt(sum(x * x for x in floats))
            if norm > 1e-10:
                floats = [x / norm for x in floats]
            results.append(floats_to_bytes(floats))
        return results

    def model_version(self) -> str:
        return self._version

    def dimensions(self) -> int:
        return self._dim


# ---------------------------------------------------------------------------
# API-backed model
# ---------------------------------------------------------------------------

def _is_transient(exc: BaseException) -> bool:
    """Rate limits, server errors, timeouts and connection failures."""
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code == 429 or exc.code >= 500
    return isinstance(exc, (urllib.error.URLError, TimeoutError, ConnectionError))


class ApiEmbeddingModel(EmbeddingModel):
    """Embedding model backed by an OpenAI-compatible HTTP API.

    Parameters
    ----------
    api_url:
        The embedding API endpoint URL.
    api_key:
        API key; falls back to the ``OPENAI_API_KEY`` environment variable.
    model_name:
        Model identifier.
    dim:
        Expected embedding dimension.
    batch_size:
        Maximum texts per API call.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        *,
        api_url: str = "https://api.openai.com/v1/embeddings",
        api_key: str = "",
        model_name: str = "text-embedding-3-small",
        dim: int = 1536,
        batch_size: int = 100,
        timeout: float = 30.0,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self._model_name = model_name
        self._dim = dim
        self._batch_size = batch_size
        self._timeout = timeout

    def embed(self, texts: list[str]) -> list[bytes]:
        """Embed texts via the API, batching as needed."""
        if not self._api_key:
            raise EmbeddingError("Embedding API key missing: pass api_key= or set OPENAI_API_KEY")
        all_vectors: list[bytes] = []
        for i in range(0, len(texts), self._batch_size):
            batch = texts[i:i + self._batch_size]
            result = self._post_batch(batch)
            data = result.get("data") if isinstance(result, dict) else None
            if not isinstance(data, list) or len(data) != len(batch):
                raise EmbeddingError("Malformed embedding response")
            for item in sorted(data, key=lambda x: x["index"]):
                vec: list[float] = item["embedding"]
                if len(vec) != self._dim:
                    raise EmbeddingError(
                        f"Expected {self._dim} dimensions, got {len(vec)}"
                    )
                all_vectors.append(floats_to_bytes(vec))
        return all_vectors

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
        before_sleep=lambda retry_state: log.warning(
            "Retrying embedding request after %s", retry_state.outcome.exception()
        ),
    )
    def _post_batch(self, batch: list[str]) -> Any:
        payload = orjson.dumps({"input": batch, "model": self._model_name})
        req = urllib.request.Request(
            self._api_url,
            data=payload,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout) as resp:
            return orjson.loads(resp.read())

    def model_version(self) -> str:
        return self._model_name

    def dimensions(self) -> int:
        return self._dim


EMBEDDING_BACKENDS = ("none", "mock", "api")


def embedding_model_from_name(name: str | None, **kwargs: Any) -> EmbeddingModel | None:
    """Build an embedding model from a CLI backend name.

    ``"none"`` (or None) returns None, which makes vector confirmation
    pass every match through.
    """
    if name is None or name == "none":
        return None
    if name == "mock":
        return MockEmbeddingModel(**kwargs)
    if name == "api":
        return ApiEmbeddingModel(**kwargs)
    raise ValueError(f"Unknown embedding backend {name!r}; expected one of {EMBEDDING_BACKENDS}")


# ---------------------------------------------------------------------------
# Assertion embedding backfill
# ---------------------------------------------------------------------------

class AssertionEmbedder:
    """Compute and store embeddings for assertions that lack one.

    Linking runs treat assertions without embeddings as unconfirmable and
    pass their matches through; once this backfill has run, a re-run of
    the linker applies vector confirmation to them.
    """

    def __init__(self, model: EmbeddingModel, store: Any, *, batch_size: int = 64) -> None:
        self._model = model
        self._store = store
        self._batch_size = batch_size

    def embed_missing(self, source_id: str) -> int:
        """Embed every assertion of *source_id* without an embedding.

        Returns the number of embeddings stored.
        """
        pending = [a for a in self._store.list_assertions(source_id) if not a.has_embedding]
        stored = 0
        for i in range(0, len(pending), self._batch_size):
            batch = pending[i:i + self._batch_size]
            vectors = self._model.embed([a.text for a in batch])
            stored += self._store.save_assertion_embeddings([
                {
                    "assertion_id": a.assertion_id,
                    "embedding": vec,
                    "model_version": self._model.model_version(),
                    "text_hash": text_hash(a.text),
                }
                for a, vec in zip(batch, vectors, strict=True)
            ])
        log.info("Embedded %d assertion(s) for source %s", stored, source_id)
        return stored
