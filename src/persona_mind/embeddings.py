"""Embeddings support. Cosine similarity for dense retrieval.

Built-in providers:
    numpy_embed(dims)        zero-service hashing vectorizer
    ollama_embed(model)      local Ollama server, retry with backoff

An embed function takes text and returns a float32 vector as bytes. It may
raise; callers in this package treat that as "no embedding this time".
"""

from __future__ import annotations

import collections
import hashlib
import http.client
import json
import logging
import random
import time
import urllib.parse
from typing import Callable

import numpy as np

from persona_mind.errors import EmbeddingError

logger = logging.getLogger(__name__)

# Type alias: takes text, returns embedding bytes
EmbedFn = Callable[[str], bytes]


# ── Helpers ────────────────────────────────────────────────────────────


class _RetryableHTTPError(Exception):
    """HTTP status that should trigger a retry (5xx, 429)."""

    def __init__(self, status: int, body: bytes):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}")


def to_bytes(vector) -> bytes:
    """Encode a float sequence as a float32 buffer."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def to_vector(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=np.float32)


def prepare_embedding_text(content: str, min_chars: int = 10,
                           max_chars: int = 2000) -> str | None:
    """Text worth embedding, or None.

    Very short messages carry no signal and are skipped. Long ones are cut
    at the last word boundary before ``max_chars``.
    """
    trimmed = content.strip()
    if len(trimmed) < min_chars:
        return None
    if len(trimmed) <= max_chars:
        return trimmed
    truncated = trimmed[:max_chars]
    last_space = truncated.rfind(" ")
    return truncated[:last_space] if last_space > 0 else truncated


# ── Built-in providers ──────────────────────────────────────────────────


def numpy_embed(dims: int = 256) -> EmbedFn:
    """Hashing vectorizer: tokenize -> hash each token to an index -> normalized TF vector.

    Deterministic, fast, captures word overlap. Good for tests and offline use.
    """

    def _embed(text: str) -> bytes:
        vec = np.zeros(dims, dtype=np.float32)
        tokens = text.lower().split()
        if not tokens:
            return vec.tobytes()
        for token in tokens:
            h = int(hashlib.md5(token.encode()).hexdigest(), 16)
            vec[h % dims] += 1.0
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec = vec / norm
        return vec.tobytes()

    return _embed


def ollama_embed(
    model: str = "nomic-embed-text",
    base_url: str = "http://localhost:11434",
    timeout: float = 20.0,
    cache_size: int = 512,
    max_retries: int = 2,
    retry_base_delay: float = 0.5,
    retry_max_delay: float = 5.0,
) -> EmbedFn:
    """Ollama embedding provider.

    - Retry with exponential backoff + jitter on 5xx/429/OSError
    - In-memory LRU cache keyed by text
    - Connection reuse via http.client.HTTPConnection (keep-alive)
    - Batch embedding via ``.batch(texts)`` -- single HTTP call

    Raises EmbeddingError once retries are exhausted. There is no silent
    fallback: mixing vectors from different models breaks similarity.
    """
    parsed = urllib.parse.urlparse(base_url)
    host = parsed.hostname or "localhost"
    port = parsed.port or 11434

    cache: collections.OrderedDict[str, bytes] = collections.OrderedDict()
    conn_holder: list[http.client.HTTPConnection | None] = [None]

    def _get_conn() -> http.client.HTTPConnection:
        if conn_holder[0] is None:
            conn_holder[0] = http.client.HTTPConnection(host, port, timeout=timeout)
        return conn_holder[0]

    def _post(payload: bytes) -> dict:
        """POST to /api/embed with exponential backoff retry."""
        last_exc: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                conn = _get_conn()
                conn.request(
                    "POST", "/api/embed", body=payload,
                    headers={"Content-Type": "application/json"},
                )
                resp = conn.getresponse()
                body = resp.read()
                if resp.status >= 500 or resp.status == 429:
                    raise _RetryableHTTPError(resp.status, body)
                if resp.status >= 400:
                    raise EmbeddingError(
                        f"Ollama embed failed ({resp.status}): {body[:200]!r}"
                    )
                return json.loads(body)
            except (http.client.HTTPException, OSError, _RetryableHTTPError) as exc:
                conn_holder[0] = None  # force reconnect
                last_exc = exc
                if attempt < max_retries:
                    delay = min(retry_base_delay * (2 ** attempt), retry_max_delay)
                    delay *= random.uniform(0.5, 1.5)  # jitter
                    logger.debug("Ollama embed attempt %d failed: %s", attempt + 1, exc)
                    time.sleep(delay)
        raise EmbeddingError(f"Ollama unavailable at {base_url}: {last_exc}") from last_exc

    def _cache_put(text: str, value: bytes) -> None:
        cache[text] = value
        cache.move_to_end(text)
        while len(cache) > cache_size:
            cache.popitem(last=False)

    def _decode(data: dict, count: int) -> list[bytes]:
        try:
            embeddings = data["embeddings"]
            if len(embeddings) < count:
                raise EmbeddingError("Ollama returned fewer embeddings than requested")
            return [to_bytes(vec) for vec in embeddings[:count]]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(f"Malformed Ollama response: {exc}") from exc

    def _embed(text: str) -> bytes:
        if text in cache:
            cache.move_to_end(text)
            return cache[text]
        payload = json.dumps({"model": model, "input": text}).encode()
        result = _decode(_post(payload), 1)[0]
        _cache_put(text, result)
        return result

    def _batch(texts: list[str]) -> list[bytes]:
        """Embed multiple texts in a single HTTP call. Uses the LRU cache."""
        results: list[bytes | None] = [None] * len(texts)
        to_fetch: list[tuple[int, str]] = []
        for i, text in enumerate(texts):
            if text in cache:
                cache.move_to_end(text)
                results[i] = cache[text]
            else:
                to_fetch.append((i, text))

        if to_fetch:
            payload = json.dumps(
                {"model": model, "input": [t for _, t in to_fetch]}
            ).encode()
            fetched = _decode(_post(payload), len(to_fetch))
            for (idx, text), result in zip(to_fetch, fetched):
                _cache_put(text, result)
                results[idx] = result

        return results  # type: ignore[return-value]

    _embed.batch = _batch  # type: ignore[attr-defined]
    return _embed


def embed_from_config(config) -> EmbedFn:
    """Build the provider named by an ``EmbeddingConfig``."""
    if config.provider == "numpy":
        return numpy_embed()
    if config.provider == "ollama":
        return ollama_embed(model=config.model, base_url=config.base_url,
                            timeout=config.timeout)
    raise ValueError(f"Unknown embedding provider: {config.provider!r}")


# ── Similarity ────────────────────────────────────────────────────────


def cosine_similarity(a: bytes, b: bytes) -> float:
    """Cosine similarity between two float32 embedding buffers.

    Raises ValueError on dimension mismatch.
    """
    va = to_vector(a)
    vb = to_vector(b)
    if va.shape != vb.shape:
        raise ValueError(
            f"Embedding dimension mismatch: {va.shape[0]}d vs {vb.shape[0]}d. "
            f"Do not mix providers."
        )
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_by_similarity(query_embedding: bytes, candidates: list[tuple[object, bytes]],
                       limit: int = 10) -> list[tuple[float, object]]:
    """Rank ``(item, embedding)`` pairs by cosine similarity, descending.

    Candidates whose dimension differs from the query are skipped.
    """
    query = to_vector(query_embedding)
    query_norm = np.linalg.norm(query)
    if query_norm == 0 or not candidates:
        return []

    items = []
    rows = []
    for item, data in candidates:
        vec = to_vector(data)
        if vec.shape != query.shape:
            continue
        items.append(item)
        rows.append(vec)
    if not rows:
        return []

    matrix = np.vstack(rows)
    norms = np.linalg.norm(matrix, axis=1) * query_norm
    dots = matrix @ query
    sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    order = np.argsort(-sims, kind="stable")[:limit]
    return [(float(sims[i]), items[i]) for i in order]
