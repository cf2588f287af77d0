"""Mind: the facade. Conversation history, recall, summaries and identity for one persona."""

from __future__ import annotations

import copy
import logging
import time
from datetime import date, datetime
from pathlib import Path

from persona_mind.config import MindConfig
from persona_mind.dates import summary_range_for
from persona_mind.embeddings import EmbedFn, embed_from_config, prepare_embedding_text
from persona_mind.errors import MindError
from persona_mind.identity import (
    ChatFn, IdentityEngine, IdentityStore, format_identity_prompt,
)
from persona_mind.models import (
    Conversation, DateRange, IdentityState, RetrievedMessage, Role, StoredMessage, Trace,
)
from persona_mind.retrieval import Retriever
from persona_mind.storage import Storage

logger = logging.getLogger(__name__)


class Mind:
    """A persona's memory. One SQLite file holds the history, one JSON file the identity.

    API:
        mind.record_conversation(agent, messages)  -- store a finished conversation
        mind.recall(query)                         -- relevant past messages
        mind.summaries_for(query)                  -- summaries a recap question asks about
        mind.reflect(summary)                      -- evolve traits and dreams
        mind.identity()                            -- who the persona is now
        mind.for_persona(name)                     -- same history, another identity
        mind.traces()                              -- recorded operations
    """

    def __init__(self, path: str | Path | None = None,
                 config: MindConfig | None = None,
                 embed_fn: EmbedFn | None = None,
                 chat_fn: ChatFn | None = None,
                 persona: str | None = None,
                 enable_traces: bool = False,
                 _storage: Storage | None = None) -> None:
        self.config = config or MindConfig()
        self.persona = persona or self.config.persona
        db_path = Path(path) if path is not None else self.config.db_path
        if _storage is None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            _storage = Storage(db_path)
        self._storage = _storage
        self._embed_fn = embed_fn
        self._chat_fn = chat_fn
        self._enable_traces = enable_traces
        self._retriever = Retriever(
            self._storage, embed_fn,
            config=self.config.retrieval,
            embedding_config=self.config.embedding,
        )
        identity_dir = db_path.parent if path is not None else self.config.data_dir
        self._identity_store = IdentityStore.for_persona(identity_dir, self.persona)

    @classmethod
    def from_config(cls, config: MindConfig, chat_fn: ChatFn | None = None,
                    enable_traces: bool = False) -> Mind:
        """Build a mind with the embedding provider the config names."""
        return cls(
            config=config,
            embed_fn=embed_from_config(config.embedding),
            chat_fn=chat_fn,
            enable_traces=enable_traces,
        )

    # ── personas ───────────────────────────────────────────────────────

    def for_persona(self, persona: str) -> Mind:
        """Same history database, another persona's identity document."""
        view = copy.copy(self)
        view.persona = persona
        view._identity_store = IdentityStore.for_persona(
            self._identity_store.path.parent, persona,
        )
        return view

    # ── history ────────────────────────────────────────────────────────

    def record_conversation(self, agent_name: str,
                            messages: list[StoredMessage] | list[tuple[str, str]],
                            summary: str | None = None,
                            detailed_summary: str | None = None,
                            created_at: str | None = None) -> Conversation:
        """Store a conversation. Messages are embedded now when possible, else by backfill."""
        t0 = time.time()
        stamp = created_at or datetime.now().astimezone().isoformat()
        stored = [self._to_stored(m, stamp) for m in messages]
        for message in stored:
            if message.embedding is None:
                message.embedding = self._embed_for_storage(message.content)

        conversation = Conversation(
            agent_name=agent_name,
            created_at=stamp,
            summary=summary,
            detailed_summary=detailed_summary,
        )
        self._storage.save_conversation(conversation, stored)
        self._trace("record", agent_name, f"{len(stored)} messages", t0)
        return conversation

    def update_conversation(self, conversation_id: int,
                            messages: list[StoredMessage],
                            summary: str | None = None,
                            detailed_summary: str | None = None) -> None:
        for message in messages:
            if message.embedding is None:
                message.embedding = self._embed_for_storage(message.content)
        self._storage.update_conversation(conversation_id, summary, detailed_summary, messages)

    def conversations(self) -> list[Conversation]:
        return self._storage.load_conversations()

    def messages(self, conversation_id: int) -> list[StoredMessage]:
        return self._storage.load_messages(conversation_id)

    def delete_conversation(self, conversation_id: int) -> bool:
        return self._storage.delete_conversation(conversation_id)

    # ── recall ─────────────────────────────────────────────────────────

    def recall(self, query: str, limit: int | None = None,
               similarity_threshold: float | None = None) -> list[RetrievedMessage]:
        """Past messages relevant to the query. Never raises for backend failures."""
        t0 = time.time()
        results = self._retriever.retrieve(query, limit, similarity_threshold)
        self._trace("recall", query, f"{len(results)} messages", t0, {
            "sources": [r.source.value for r in results],
        })
        return results

    def backfill(self) -> int:
        """Embed one batch of messages that were stored without an embedding."""
        return self._retriever.backfill()

    # ── summaries ──────────────────────────────────────────────────────

    def summaries_for(self, query: str, today: date | None = None) -> list[Conversation]:
        """Summarized conversations from the period a recap question refers to.

        Empty when the query isn't a recap request or names no period.
        """
        t0 = time.time()
        today = today or date.today()
        span = summary_range_for(query, today)
        if span is None:
            return []
        found = self.conversations_in(span)
        self._trace("summaries", query, f"{len(found)} conversations", t0, {
            "start": span.start.isoformat(), "end": span.end.isoformat(),
        })
        return found

    def conversations_in(self, span: DateRange) -> list[Conversation]:
        """Conversations in the range that have a summary, oldest first."""
        found = [
            c for c in self._storage.conversations_between(span.start, span.end)
            if c.summary
        ]
        found.sort(key=lambda c: c.created_at)
        return found

    # ── identity ───────────────────────────────────────────────────────

    def reflect(self, summary: str,
                recent_user_messages: list[str] | tuple[str, ...] | None = None,
                now: datetime | None = None) -> bool:
        """Run one identity reflection cycle. True when the identity was written.

        Without explicit messages, the most recent stored user messages are used.
        """
        if self._chat_fn is None:
            raise MindError("reflect() needs a chat_fn")
        t0 = time.time()
        if recent_user_messages is None:
            recent = self._storage.load_recent_user_messages(
                self.config.retrieval.recent_user_limit,
            )
            recent_user_messages = [m.content for m in reversed(recent)]
        engine = IdentityEngine(self._identity_store, self._chat_fn, self.config.identity)
        written = engine.reflect_and_update(summary, recent_user_messages, now)
        self._trace("reflect", summary, "written" if written else "skipped", t0, {
            "persona": self.persona,
        })
        return written

    def identity(self) -> IdentityState:
        """Who the persona is now. Defaults are created on first access."""
        return self._identity_store.load()

    def save_identity(self, state: IdentityState) -> None:
        """Persist a manually edited identity."""
        self._identity_store.save(state)

    def identity_prompt(self) -> str:
        return format_identity_prompt(self.identity())

    # ── traces (observability) ─────────────────────────────────────────

    def _trace(self, operation: str, input_text: str, output_text: str,
               t0: float, metadata: dict | None = None) -> None:
        if not self._enable_traces:
            return
        trace = Trace(
            operation=operation,
            input_text=str(input_text)[:500],
            output_text=str(output_text)[:500],
            duration_ms=(time.time() - t0) * 1000,
            metadata=metadata or {},
        )
        try:
            self._storage.save_trace(trace)
        except Exception as exc:
            logger.warning("Could not record %s trace: %s", operation, exc)

    def traces(self, operation: str | None = None, limit: int = 100) -> list[Trace]:
        return self._storage.load_traces(operation=operation, limit=limit)

    # ── utilities ──────────────────────────────────────────────────────

    @property
    def count(self) -> int:
        """Stored messages."""
        return self._storage.count()

    def close(self) -> None:
        self._storage.close()

    def __enter__(self) -> Mind:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Mind(persona={self.persona!r}, messages={self.count})"

    def _to_stored(self, message: StoredMessage | tuple[str, str],
                   stamp: str) -> StoredMessage:
        if isinstance(message, StoredMessage):
            return message
        role, content = message
        if role in (Role.USER.value, Role.ASSISTANT.value):
            role = Role(role)
        return StoredMessage(role=role, content=content, timestamp=stamp)

    def _embed_for_storage(self, content: str) -> bytes | None:
        """Embedding at write time. None leaves the message to the backfill."""
        if self._embed_fn is None:
            return None
        text = prepare_embedding_text(
            content,
            min_chars=self.config.embedding.min_chars,
            max_chars=self.config.embedding.max_chars,
        )
        if text is None:
            return b""
        try:
            return self._embed_fn(text)
        except Exception as exc:
            logger.warning("Embedding at write time failed, leaving for backfill: %s", exc)
            return None
