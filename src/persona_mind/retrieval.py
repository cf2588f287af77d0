"""Hybrid retrieval: dense + sparse search fused with Reciprocal Rank Fusion.

A profile heuristic covers "what do I like?"-style questions, where vector
search tends to return other questions instead of the statements that
answer them. Every stage degrades to an empty result on failure; retrieve()
itself never raises for a collaborator error.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from persona_mind.config import EmbeddingConfig, RetrievalConfig
from persona_mind.embeddings import EmbedFn, prepare_embedding_text
from persona_mind.models import RetrievalSource, RetrievedMessage, Role, StoredMessage

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "if", "then", "else", "about", "to",
    "of", "with", "by", "from", "up", "is", "are", "was", "were", "be",
    "been", "being", "have", "has", "had", "do", "does", "did", "can", "could",
    "will", "would", "should", "may", "might", "must", "i", "you", "he",
    "she", "it", "we", "they", "my", "your", "his", "her", "its", "our",
    "their", "what", "when", "where", "why", "how", "which", "who", "whom",
    "me", "know",
})

PROFILE_TRIGGERS = (
    "about me",
    "who am i",
    "what do you know about me",
    "my profile",
    "my preferences",
    "what do i like",
    "what do i love",
    "what do i prefer",
    "do i like",
    "do i love",
    "what did i say",
    "what did i tell",
    "what did i mention",
    "what have i said",
    "my favorite",
    "my favourite",
    "you know about me",
    "you know that i",
    "told you",
    "i mentioned",
    "think i like",
    "think i love",
    "think i prefer",
    "guess i like",
    "guess i love",
    "believe i like",
    "remember about me",
    "recall about me",
    "know i like",
    "know i love",
    "know about my",
)

PREFERENCE_WORDS = ("like", "love", "prefer", "favorite", "favourite")
QUESTION_PREFIXES = ("what", "do", "which", "any")

PROFILE_FACT_PATTERNS = (
    "i am ",
    "i'm ",
    "my name ",
    "i live ",
    "i like ",
    "i love ",
    "i prefer ",
    "my favorite ",
    "my favourite ",
    "my job ",
    "i work ",
)


@runtime_checkable
class MessageStore(Protocol):
    """Search primitives the retriever needs from a storage backend."""

    def search_similar(self, embedding: bytes, limit: int) -> list[RetrievedMessage]:
        ...

    def search_keyword(self, query: str, limit: int) -> list[RetrievedMessage]:
        ...

    def count_missing_embeddings(self) -> int:
        ...

    def load_missing_embeddings(self, limit: int) -> list[StoredMessage]:
        ...

    def write_embedding(self, message_id: int, embedding: bytes) -> None:
        ...

    def load_recent_user_messages(self, limit: int) -> list[StoredMessage]:
        ...


class Retriever:
    """Retrieves past messages relevant to a query.

    The store is only written to by the embedding backfill step.
    """

    def __init__(self, store: MessageStore, embed_fn: EmbedFn | None = None,
                 config: RetrievalConfig | None = None,
                 embedding_config: EmbeddingConfig | None = None) -> None:
        self._store = store
        self._embed_fn = embed_fn
        self.config = config or RetrievalConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()

    def retrieve(self, query: str, limit: int | None = None,
                 similarity_threshold: float | None = None) -> list[RetrievedMessage]:
        """Fused results for ``query``, at most ``limit`` of them.

        The similarity threshold filters the fused list before heuristic
        profile results are merged in, so a heuristic match is never dropped
        along with a weak dense duplicate of itself.
        """
        limit = self.config.limit if limit is None else limit
        if similarity_threshold is None:
            similarity_threshold = self.config.similarity_threshold
        if limit <= 0:
            return []

        query_embedding = self._embed_query(query)

        missing = 0
        if query_embedding is not None:
            missing = self._count_missing()
            if missing >= self.config.backfill_threshold:
                self.backfill()

        dense = self._dense_search(query_embedding, limit)
        if query_embedding is not None and not dense and missing > 0:
            logger.debug("Dense search empty with %d unembedded messages; retrying", missing)
            self.backfill()
            dense = self._dense_search(query_embedding, limit)

        sparse = self._sparse_search(query, limit)
        fused = fuse_results(dense, sparse, limit, k=self.config.rrf_k)
        logger.debug("Fused %d dense + %d sparse into %d", len(dense), len(sparse), len(fused))

        fused = apply_threshold(fused, similarity_threshold)

        if is_profile_query(query):
            heuristic = self._profile_fallback()
            logger.debug("Profile query: %d heuristic candidates", len(heuristic))
            # Only first-person statements answer a profile question
            if heuristic:
                preference_fused = [
                    msg for msg in fused if is_profile_fact_candidate(msg.content)
                ]
                fused = merge_heuristic_results(preference_fused, heuristic, limit)

        return fused

    # ── backfill ───────────────────────────────────────────────────────

    def backfill(self) -> int:
        """Embed up to one batch of the oldest unembedded messages.

        Returns how many got a real embedding. Failures stop the batch early.
        """
        if self._embed_fn is None:
            return 0
        try:
            candidates = self._store.load_missing_embeddings(self.config.backfill_batch)
        except Exception as exc:
            logger.warning("Backfill: could not load unembedded messages: %s", exc)
            return 0

        updated = 0
        for candidate in candidates:
            text = prepare_embedding_text(
                candidate.content,
                min_chars=self.embedding_config.min_chars,
                max_chars=self.embedding_config.max_chars,
            )
            try:
                if text is None:
                    self._store.write_embedding(candidate.id, b"")
                    continue
                self._store.write_embedding(candidate.id, self._embed_fn(text))
                updated += 1
            except Exception as exc:
                logger.warning("Backfill stopped after %d messages: %s", updated, exc)
                break
        logger.debug("Backfilled %d of %d candidates", updated, len(candidates))
        return updated

    # ── stages ─────────────────────────────────────────────────────────

    def _embed_query(self, query: str) -> bytes | None:
        if self._embed_fn is None:
            return None
        try:
            return self._embed_fn(query)
        except Exception as exc:
            logger.warning("Query embedding failed, continuing without dense search: %s", exc)
            return None

    def _count_missing(self) -> int:
        try:
            return self._store.count_missing_embeddings()
        except Exception as exc:
            logger.warning("Could not count unembedded messages: %s", exc)
            return 0

    def _dense_search(self, embedding: bytes | None, limit: int) -> list[RetrievedMessage]:
        if embedding is None:
            return []
        try:
            results = self._store.search_similar(embedding, limit)
        except Exception as exc:
            logger.warning("Dense search failed: %s", exc)
            return []
        for result in results:
            result.source = RetrievalSource.DENSE
        return results

    def _sparse_search(self, query: str, limit: int) -> list[RetrievedMessage]:
        keyword_query = build_keyword_query(query)
        if keyword_query is None:
            logger.debug("No keyword query (all stopwords)")
            return []
        try:
            results = self._store.search_keyword(keyword_query, limit)
        except Exception as exc:
            logger.warning("Sparse search failed: %s", exc)
            return []
        for result in results:
            result.source = RetrievalSource.SPARSE
        return results

    def _profile_fallback(self) -> list[RetrievedMessage]:
        try:
            messages = self._store.load_recent_user_messages(self.config.recent_user_limit)
        except Exception as exc:
            logger.warning("Profile fallback could not load recent messages: %s", exc)
            return []
        return [
            RetrievedMessage(
                content=message.content,
                role=Role.USER,
                timestamp=message.timestamp,
                similarity=0.0,
                score=self.config.heuristic_score,
                source=RetrievalSource.HEURISTIC,
            )
            for message in messages
            if is_profile_fact_candidate(message.content)
        ]


# ── Fusion ────────────────────────────────────────────────────────────


def rrf_score(rank: int | None, k: float = 60.0) -> float:
    """Reciprocal rank contribution of a 1-based rank; 0 when absent."""
    if rank is None:
        return 0.0
    return 1.0 / (k + rank)


def fuse_results(dense: list[RetrievedMessage], sparse: list[RetrievedMessage],
                 limit: int, k: float = 60.0) -> list[RetrievedMessage]:
    """Reciprocal Rank Fusion of two ranked lists.

    Entries are deduplicated by (role, timestamp, content); one present in
    both lists becomes HYBRID. Ties keep dense-pass insertion order.
    """
    fused: dict[tuple[str, str, str], RetrievedMessage] = {}
    dense_ranks: dict[tuple[str, str, str], int] = {}
    sparse_ranks: dict[tuple[str, str, str], int] = {}

    for rank, result in enumerate(dense, start=1):
        key = result.key
        dense_ranks.setdefault(key, rank)
        fused.setdefault(key, result)

    for rank, result in enumerate(sparse, start=1):
        key = result.key
        sparse_ranks.setdefault(key, rank)
        if key in fused:
            if key in dense_ranks:
                fused[key].source = RetrievalSource.HYBRID
        else:
            fused[key] = result

    for key, entry in fused.items():
        entry.score = rrf_score(dense_ranks.get(key), k) + rrf_score(sparse_ranks.get(key), k)

    results = sorted(fused.values(), key=lambda m: m.score, reverse=True)
    return results[:limit]


def apply_threshold(results: list[RetrievedMessage],
                    similarity_threshold: float) -> list[RetrievedMessage]:
    """Drop dense-only results at or below the threshold. Other sources are exempt."""
    return [
        msg for msg in results
        if msg.source != RetrievalSource.DENSE or msg.similarity > similarity_threshold
    ]


def merge_heuristic_results(current: list[RetrievedMessage],
                            heuristic: list[RetrievedMessage],
                            limit: int) -> list[RetrievedMessage]:
    merged = list(current[:limit])
    seen = {msg.key for msg in merged}
    for result in heuristic:
        if len(merged) >= limit:
            break
        if result.key in seen:
            continue
        seen.add(result.key)
        merged.append(result)
    return merged


# ── Keyword query ─────────────────────────────────────────────────────


def tokenize_query(query: str) -> list[str]:
    """Lowercased, edge-stripped, unique tokens of at least two characters."""
    tokens: list[str] = []
    for raw in query.split():
        cleaned = _strip_edges(raw).lower()
        if len(cleaned) < 2:
            continue
        if cleaned not in tokens:
            tokens.append(cleaned)
    return tokens


def is_stopword(token: str) -> bool:
    return token in STOPWORDS


def build_keyword_query(query: str) -> str | None:
    """OR-joined keywords, or None when only stopwords remain."""
    filtered = [t for t in tokenize_query(query) if not is_stopword(t)]
    if not filtered:
        return None
    return " OR ".join(filtered)


def _strip_edges(token: str) -> str:
    start, end = 0, len(token)
    while start < end and not _is_kept(token[start]):
        start += 1
    while end > start and not _is_kept(token[end - 1]):
        end -= 1
    return token[start:end]


def _is_kept(char: str) -> bool:
    return char.isalnum() or char == "-"


# ── Profile heuristics ────────────────────────────────────────────────


def is_profile_query(query: str) -> bool:
    """Is the user asking what the assistant knows about them?"""
    lowered = query.lower()
    if any(trigger in lowered for trigger in PROFILE_TRIGGERS):
        return True

    has_preference = any(word in lowered for word in PREFERENCE_WORDS)
    has_question = lowered.startswith(QUESTION_PREFIXES)
    about_user = " i " in lowered or " my " in lowered
    return has_preference and has_question and about_user


def is_profile_fact_candidate(content: str) -> bool:
    """Does the text read like a first-person statement about the user?"""
    lowered = content.lower()
    return any(pattern in lowered for pattern in PROFILE_FACT_PATTERNS)
