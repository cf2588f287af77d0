"""SQLite storage. One file holds a user's conversation history."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path

from persona_mind.dates import date_in_range
from persona_mind.embeddings import rank_by_similarity
from persona_mind.models import (
    Conversation, DateRange, RetrievalSource, RetrievedMessage, Role, StoredMessage, Trace,
)

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "id, conversation_id, role, content, timestamp, display_name, embedding"
_RETRIEVABLE_ROLES = ("user", "assistant")


class Storage:
    """SQLite backend with a vector column and an FTS5 keyword index.

    Safe to share between threads: every statement runs under one lock.
    An empty embedding blob marks a message that is too short to embed.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self.has_fts = False
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_name TEXT NOT NULL,
                summary TEXT,
                detailed_summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                display_name TEXT,
                embedding BLOB,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                    ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_messages_role
                ON messages(role);

            CREATE TABLE IF NOT EXISTS traces (
                id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                input_text TEXT NOT NULL DEFAULT '',
                output_text TEXT NOT NULL DEFAULT '',
                duration_ms REAL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_traces_operation
                ON traces(operation);
            CREATE INDEX IF NOT EXISTS idx_traces_created
                ON traces(created_at DESC);
        """)
        # Migration: older databases predate these columns
        self._ensure_column("conversations", "detailed_summary", "TEXT")
        self._ensure_column("messages", "display_name", "TEXT")
        self._ensure_column("messages", "embedding", "BLOB")
        self._init_fts()
        self.conn.commit()

    def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        existing = [row[1] for row in self.conn.execute(f"PRAGMA table_info({table})")]
        if column not in existing:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")

    def _init_fts(self) -> None:
        existed = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE name = 'messages_fts'"
        ).fetchone() is not None
        try:
            self.conn.executescript("""
                CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts
                    USING fts5(content, content='messages', content_rowid='id');

                CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
                    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
                END;
                CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
                    INSERT INTO messages_fts(messages_fts, rowid, content)
                        VALUES ('delete', old.id, old.content);
                END;
                CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE OF content ON messages BEGIN
                    INSERT INTO messages_fts(messages_fts, rowid, content)
                        VALUES ('delete', old.id, old.content);
                    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
                END;
            """)
            self.has_fts = True
            if not existed:
                self.conn.execute("INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')")
        except sqlite3.OperationalError as exc:
            logger.warning("FTS5 unavailable (%s); keyword search falls back to LIKE", exc)
            self.has_fts = False

    # ── Conversations ──────────────────────────────────────────────────

    def save_conversation(self, conversation: Conversation,
                          messages: list[StoredMessage]) -> int:
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO conversations
                   (agent_name, summary, detailed_summary, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    conversation.agent_name, conversation.summary,
                    conversation.detailed_summary, conversation.created_at,
                    conversation.created_at,
                ),
            )
            conversation_id = cursor.lastrowid
            for message in messages:
                self._insert_message(conversation_id, message)
            self.conn.commit()
        conversation.id = conversation_id
        conversation.message_count = len(messages)
        return conversation_id

    def update_conversation(self, conversation_id: int, summary: str | None,
                            detailed_summary: str | None,
                            messages: list[StoredMessage]) -> None:
        """Replace summary and messages of an existing conversation."""
        now = datetime.now().astimezone().isoformat()
        with self._lock:
            self.conn.execute(
                """UPDATE conversations
                   SET summary = ?, detailed_summary = ?, updated_at = ?
                   WHERE id = ?""",
                (summary, detailed_summary, now, conversation_id),
            )
            self.conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            for message in messages:
                self._insert_message(conversation_id, message)
            self.conn.commit()

    def add_message(self, conversation_id: int, message: StoredMessage) -> int:
        with self._lock:
            message_id = self._insert_message(conversation_id, message)
            self.conn.commit()
        return message_id

    def _insert_message(self, conversation_id: int, message: StoredMessage) -> int:
        cursor = self.conn.execute(
            """INSERT INTO messages
               (conversation_id, role, content, timestamp, display_name, embedding)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                conversation_id, getattr(message.role, "value", message.role), message.content,
                message.timestamp, message.display_name, message.embedding,
            ),
        )
        message.id = cursor.lastrowid
        message.conversation_id = conversation_id
        return cursor.lastrowid

    def load_conversations(self) -> list[Conversation]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT c.id, c.agent_name, c.summary, c.detailed_summary,
                          c.created_at, COUNT(m.id)
                   FROM conversations c
                   LEFT JOIN messages m ON c.id = m.conversation_id
                   GROUP BY c.id
                   ORDER BY c.created_at DESC"""
            ).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def conversations_between(self, start: date, end: date) -> list[Conversation]:
        """Conversations whose creation date falls in ``[start, end]``."""
        if start > end:
            return []
        span = DateRange(start, end)
        result = []
        for convo in self.load_conversations():
            created = _parse_date(convo.created_at)
            if created is not None and date_in_range(created, span):
                result.append(convo)
        return result

    def load_messages(self, conversation_id: int) -> list[StoredMessage]:
        with self._lock:
            rows = self.conn.execute(
                f"""SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = ? ORDER BY id ASC""",
                (conversation_id,),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def delete_conversation(self, conversation_id: int) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            self.conn.commit()
        return cursor.rowcount > 0

    # ── Search primitives ──────────────────────────────────────────────

    def search_similar(self, embedding: bytes, limit: int) -> list[RetrievedMessage]:
        """Dense search: cosine similarity against every embedded message."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT role, content, timestamp, embedding FROM messages
                   WHERE embedding IS NOT NULL AND length(embedding) > 0
                     AND role IN (?, ?)
                   ORDER BY id ASC""",
                _RETRIEVABLE_ROLES,
            ).fetchall()
        candidates = [((r[0], r[1], r[2]), r[3]) for r in rows]
        ranked = rank_by_similarity(embedding, candidates, limit=limit)
        return [
            RetrievedMessage(
                content=content,
                role=Role(role),
                timestamp=timestamp,
                similarity=similarity,
                score=similarity,
                source=RetrievalSource.DENSE,
            )
            for similarity, (role, content, timestamp) in ranked
        ]

    def search_keyword(self, query: str, limit: int) -> list[RetrievedMessage]:
        """Sparse search. ``query`` is an OR-joined term list (``"tea OR apples"``)."""
        terms = [t.strip() for t in query.split(" OR ") if t.strip()]
        if not terms:
            return []
        with self._lock:
            if self.has_fts:
                rows = self._search_fts(terms, limit)
            else:
                rows = self._search_like(terms, limit)
        return [
            RetrievedMessage(
                content=content,
                role=Role(role),
                timestamp=timestamp,
                similarity=0.0,
                score=float(score),
                source=RetrievalSource.SPARSE,
            )
            for role, content, timestamp, score in rows
        ]

    def _search_fts(self, terms: list[str], limit: int) -> list[tuple]:
        expression = " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)
        # bm25() is lower-is-better; negate so higher score means more relevant
        return self.conn.execute(
            """SELECT m.role, m.content, m.timestamp, -bm25(messages_fts)
               FROM messages_fts
               JOIN messages m ON m.id = messages_fts.rowid
               WHERE messages_fts MATCH ? AND m.role IN (?, ?)
               ORDER BY bm25(messages_fts) ASC, m.id DESC
               LIMIT ?""",
            (expression, *_RETRIEVABLE_ROLES, limit),
        ).fetchall()

    def _search_like(self, terms: list[str], limit: int) -> list[tuple]:
        hits = " + ".join("(instr(lower(content), ?) > 0)" for _ in terms)
        return self.conn.execute(
            f"""SELECT role, content, timestamp, score FROM (
                    SELECT id, role, content, timestamp, ({hits}) AS score
                    FROM messages WHERE role IN (?, ?)
                ) WHERE score > 0
                ORDER BY score DESC, id DESC
                LIMIT ?""",
            (*[t.lower() for t in terms], *_RETRIEVABLE_ROLES, limit),
        ).fetchall()

    # ── Embedding maintenance ──────────────────────────────────────────

    def count_missing_embeddings(self) -> int:
        with self._lock:
            return self.conn.execute(
                "SELECT COUNT(*) FROM messages WHERE embedding IS NULL"
            ).fetchone()[0]

    def load_missing_embeddings(self, limit: int) -> list[StoredMessage]:
        """Oldest unembedded messages first."""
        with self._lock:
            rows = self.conn.execute(
                f"""SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE embedding IS NULL ORDER BY id ASC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def write_embedding(self, message_id: int, embedding: bytes) -> None:
        """Persist an embedding. ``b""`` marks the message as not embeddable."""
        with self._lock:
            self.conn.execute(
                "UPDATE messages SET embedding = ? WHERE id = ?",
                (embedding, message_id),
            )
            self.conn.commit()

    def embedding_stats(self) -> tuple[int, int]:
        """(total messages, messages with a usable embedding)."""
        with self._lock:
            row = self.conn.execute(
                """SELECT COUNT(*),
                          COALESCE(SUM(embedding IS NOT NULL AND length(embedding) > 0), 0)
                   FROM messages"""
            ).fetchone()
        return row[0], row[1]

    # ── Recent messages ────────────────────────────────────────────────

    def load_recent_user_messages(self, limit: int) -> list[StoredMessage]:
        """Newest user messages first."""
        with self._lock:
            rows = self.conn.execute(
                f"""SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE role = ? ORDER BY id DESC LIMIT ?""",
                (Role.USER.value, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    # ── Traces ─────────────────────────────────────────────────────────

    def save_trace(self, trace: Trace) -> None:
        with self._lock:
            self.conn.execute(
                """INSERT INTO traces
                   (id, operation, input_text, output_text,
                    duration_ms, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    trace.id, trace.operation, trace.input_text,
                    trace.output_text, trace.duration_ms,
                    json.dumps(trace.metadata), trace.created_at,
                ),
            )
            self.conn.commit()

    def load_traces(self, operation: str | None = None,
                    limit: int = 100) -> list[Trace]:
        query = "SELECT * FROM traces WHERE 1=1"
        params: list = []
        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_trace(r) for r in rows]

    # ── Close ──────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ── Row mappers ────────────────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: tuple) -> StoredMessage:
        return StoredMessage(
            id=row[0],
            conversation_id=row[1],
            role=Role(row[2]) if row[2] in _RETRIEVABLE_ROLES else row[2],
            content=row[3],
            timestamp=row[4],
            display_name=row[5],
            embedding=row[6],
        )

    @staticmethod
    def _row_to_conversation(row: tuple) -> Conversation:
        return Conversation(
            id=row[0],
            agent_name=row[1],
            summary=row[2],
            detailed_summary=row[3],
            created_at=row[4],
            message_count=row[5],
        )

    @staticmethod
    def _row_to_trace(row: tuple) -> Trace:
        return Trace(
            id=row[0],
            operation=row[1],
            input_text=row[2],
            output_text=row[3],
            duration_ms=row[4],
            metadata=json.loads(row[5]),
            created_at=row[6],
        )


def _parse_date(value: str) -> date | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None
