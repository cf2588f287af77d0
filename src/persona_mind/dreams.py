"""Dream state machine. Active and backlog lists, titles unique across both."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from persona_mind.models import DreamEntry, DreamSet, Origin

logger = logging.getLogger(__name__)

FILLER_WORDS = frozenset({"a", "the", "in", "to", "of", "for", "and", "or"})
SIMILAR_TITLE_RATIO = 0.7


class DreamAction(str, Enum):
    ADD_ACTIVE = "add_active"
    ADD_BACKLOG = "add_backlog"
    PROMOTE = "promote"
    DEMOTE = "demote"
    RETIRE = "retire"

    @classmethod
    def parse(cls, value: str) -> DreamAction | None:
        """Unknown actions map to None; callers skip them."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass
class DreamChange:
    title: str
    priority: int
    now: datetime
    reason: str | None = None
    origin: Origin = Origin.INFERRED


def apply_dream_action(dreams: DreamSet, action: DreamAction, change: DreamChange) -> None:
    if action is DreamAction.ADD_ACTIVE:
        take_dream(dreams.backlog, change.title)
        add_dream(dreams.active, change)
    elif action is DreamAction.ADD_BACKLOG:
        take_dream(dreams.active, change.title)
        add_dream(dreams.backlog, change)
    elif action is DreamAction.PROMOTE:
        promote_dream(dreams, change)
    elif action is DreamAction.DEMOTE:
        demote_dream(dreams, change)
    elif action is DreamAction.RETIRE:
        retire_dream(dreams, change.title)


def add_dream(entries: list[DreamEntry], change: DreamChange) -> None:
    """Idempotent upsert: refresh an existing or similar title, append a new one."""
    stamp = change.now.isoformat()
    for existing in entries:
        if existing.title == change.title or dreams_are_similar(existing.title, change.title):
            existing.priority = max(1, change.priority)
            existing.last_mention = stamp
            if change.reason:
                existing.progress_note = change.reason
            return
    entries.append(DreamEntry(
        title=change.title,
        priority=max(1, change.priority),
        origin=change.origin,
        last_mention=stamp,
        progress_note=change.reason or None,
    ))


def dreams_are_similar(a: str, b: str) -> bool:
    """Rephrasings of one goal: 70%+ of the shorter title's meaningful words match.

    "learn rust" and "learn the rust language" are similar.
    """
    a_words = _meaningful_words(a)
    b_words = _meaningful_words(b)
    if not a_words or not b_words:
        return False
    matching = sum(1 for word in a_words if word in b_words)
    return matching / min(len(a_words), len(b_words)) >= SIMILAR_TITLE_RATIO


def _meaningful_words(title: str) -> list[str]:
    return [w for w in title.lower().split() if w not in FILLER_WORDS]


def take_dream(entries: list[DreamEntry], title: str) -> DreamEntry | None:
    for index, entry in enumerate(entries):
        if entry.title == title:
            return entries.pop(index)
    return None


def promote_dream(dreams: DreamSet, change: DreamChange) -> bool:
    """Backlog -> active. No-op when the title is not in the backlog."""
    taken = take_dream(dreams.backlog, change.title)
    if taken is None:
        logger.debug("Promote ignored, %r not in backlog", change.title)
        return False
    change.origin = taken.origin
    add_dream(dreams.active, change)
    return True


def demote_dream(dreams: DreamSet, change: DreamChange) -> bool:
    """Active -> backlog. No-op when the title is not active."""
    taken = take_dream(dreams.active, change.title)
    if taken is None:
        logger.debug("Demote ignored, %r not active", change.title)
        return False
    change.origin = taken.origin
    add_dream(dreams.backlog, change)
    return True


def retire_dream(dreams: DreamSet, title: str) -> None:
    take_dream(dreams.active, title)
    take_dream(dreams.backlog, title)


def cap_dreams(dreams: DreamSet, max_active: int, max_backlog: int) -> None:
    """Keep the highest-priority entries (1 = highest). Sort is stable."""
    dreams.active.sort(key=lambda d: d.priority)
    del dreams.active[max_active:]
    dreams.backlog.sort(key=lambda d: d.priority)
    del dreams.backlog[max_backlog:]
