"""Core data models. Messages are retrieved, dates are resolved, an identity evolves."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class RetrievalSource(str, Enum):
    DENSE = "dense"            # embedding similarity
    SPARSE = "sparse"          # keyword index
    HYBRID = "hybrid"          # both of the above
    HEURISTIC = "heuristic"    # rule-based profile fallback


# ── Messages ──────────────────────────────────────────────────────────


@dataclass
class StoredMessage:
    """A persisted chat message, as the storage layer sees it."""

    role: Role | str  # system messages keep their raw role
    content: str
    timestamp: str
    display_name: str | None = None
    embedding: bytes | None = None  # numpy float32 .tobytes()
    conversation_id: int | None = None
    id: int | None = None


@dataclass
class RetrievedMessage:
    """A past message surfaced for prompt construction. Never persisted."""

    content: str
    role: Role
    timestamp: str
    similarity: float = 0.0
    score: float = 0.0
    source: RetrievalSource = RetrievalSource.DENSE

    @property
    def key(self) -> tuple[str, str, str]:
        """Deduplication key."""
        return (self.role.value, self.timestamp, self.content)


@dataclass
class Conversation:
    agent_name: str
    created_at: str
    summary: str | None = None
    detailed_summary: str | None = None
    message_count: int = 0
    id: int | None = None


# ── Dates ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"range start {self.start} is after end {self.end}")

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True, order=True)
class IsoWeek:
    year: int
    week: int

    def __post_init__(self) -> None:
        if not 1 <= self.week <= 53:
            raise ValueError(f"ISO week must be in 1..53, got {self.week}")

    def __str__(self) -> str:
        return f"{self.year}-W{self.week:02d}"


@dataclass(frozen=True)
class DateRef:
    date: date

    def as_range(self) -> DateRange:
        return DateRange(self.date, self.date)


@dataclass(frozen=True)
class RangeRef:
    range: DateRange

    def as_range(self) -> DateRange:
        return self.range


@dataclass(frozen=True)
class WeekRef:
    week: IsoWeek

    def as_range(self) -> DateRange:
        """Monday..Sunday of the week."""
        from persona_mind.dates import monday_of
        monday = monday_of(self.week.year, self.week.week)
        return DateRange(monday, monday + timedelta(days=6))


DateReference = DateRef | RangeRef | WeekRef


# ── Identity ──────────────────────────────────────────────────────────


class Origin(str, Enum):
    MANUAL = "manual"
    INFERRED = "inferred"

    @classmethod
    def parse(cls, value: str | None) -> Origin:
        if value and value.strip().lower() == "manual":
            return cls.MANUAL
        return cls.INFERRED


@dataclass
class CoreBeliefs:
    """Manual-only. The evolution engine never touches this."""

    identity: str = "Assistant"
    beliefs: list[str] = field(default_factory=list)
    backstory: str = ""


@dataclass
class IdentityTrait:
    name: str
    strength: float = 0.5
    origin: Origin = Origin.INFERRED
    last_evidence: str | None = None
    last_updated: str | None = None


@dataclass
class DreamEntry:
    title: str
    priority: int = 3           # 1 = highest
    origin: Origin = Origin.INFERRED
    last_mention: str | None = None
    progress_note: str | None = None


@dataclass
class DreamSet:
    active: list[DreamEntry] = field(default_factory=list)
    backlog: list[DreamEntry] = field(default_factory=list)


@dataclass
class IdentityState:
    """A persona's evolving identity. Persisted as one JSON document."""

    core: CoreBeliefs = field(default_factory=CoreBeliefs)
    traits: list[IdentityTrait] = field(default_factory=list)
    dreams: DreamSet = field(default_factory=DreamSet)
    updated_at: str | None = None
    last_reflection_at: str | None = None

    def find_trait(self, name: str) -> IdentityTrait | None:
        wanted = name.strip().lower()
        for entry in self.traits:
            if entry.name.strip().lower() == wanted:
                return entry
        return None

    def to_dict(self) -> dict:
        data = {
            "core": {
                "identity": self.core.identity,
                "beliefs": list(self.core.beliefs),
                "backstory": self.core.backstory,
            },
            "traits": [
                {
                    "name": t.name,
                    "strength": t.strength,
                    "origin": t.origin.value,
                    "last_evidence": t.last_evidence,
                    "last_updated": t.last_updated,
                }
                for t in self.traits
            ],
            "dreams": {
                "active": [_dream_to_dict(d) for d in self.dreams.active],
                "backlog": [_dream_to_dict(d) for d in self.dreams.backlog],
            },
            "updated_at": self.updated_at,
        }
        if self.last_reflection_at is not None:
            data["last_reflection_at"] = self.last_reflection_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> IdentityState:
        """Lenient: unknown keys are ignored, missing keys take defaults."""
        core = data.get("core") or {}
        dreams = data.get("dreams") or {}
        return cls(
            core=CoreBeliefs(
                identity=core.get("identity", CoreBeliefs().identity),
                beliefs=[str(b) for b in core.get("beliefs", [])],
                backstory=core.get("backstory", ""),
            ),
            traits=[
                IdentityTrait(
                    name=t.get("name", ""),
                    strength=float(t.get("strength", 0.5)),
                    origin=Origin.parse(t.get("origin")),
                    last_evidence=t.get("last_evidence"),
                    last_updated=t.get("last_updated"),
                )
                for t in data.get("traits", [])
            ],
            dreams=DreamSet(
                active=[_dream_from_dict(d) for d in dreams.get("active", [])],
                backlog=[_dream_from_dict(d) for d in dreams.get("backlog", [])],
            ),
            updated_at=data.get("updated_at"),
            last_reflection_at=data.get("last_reflection_at"),
        )


def _dream_to_dict(dream: DreamEntry) -> dict:
    return {
        "title": dream.title,
        "priority": dream.priority,
        "origin": dream.origin.value,
        "last_mention": dream.last_mention,
        "progress_note": dream.progress_note,
    }


def _dream_from_dict(data: dict) -> DreamEntry:
    return DreamEntry(
        title=data.get("title", ""),
        priority=max(1, int(data.get("priority", 3))),
        origin=Origin.parse(data.get("origin")),
        last_mention=data.get("last_mention"),
        progress_note=data.get("progress_note"),
    )


# ── Observability ─────────────────────────────────────────────────────


@dataclass
class Trace:
    """One recorded operation (recall, reflect, summaries)."""

    operation: str
    input_text: str = ""
    output_text: str = ""
    duration_ms: float | None = None
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
