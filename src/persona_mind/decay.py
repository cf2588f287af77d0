"""Identity decay. Traits and dreams that aren't reinforced fade away."""

from __future__ import annotations

from datetime import datetime, timedelta

from persona_mind.config import IdentityConfig
from persona_mind.dreams import DreamChange, demote_dream
from persona_mind.models import IdentityState, IdentityTrait


def parse_timestamp(value: str | None, tz=None) -> datetime | None:
    """Parse an RFC3339 timestamp. Naive values are read in ``tz``."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None and tz is not None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def parse_timestamp_as_of(value: str | None, now: datetime) -> datetime | None:
    """Parse ``value`` so it can be subtracted from ``now``.

    Naive stamps take ``now``'s zone; aware stamps become local naive
    time when ``now`` is naive.
    """
    parsed = parse_timestamp(value, now.tzinfo)
    if parsed is not None and now.tzinfo is None and parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def decay_trait(entry: IdentityTrait, now: datetime,
                config: IdentityConfig | None = None) -> float:
    """New strength after one decay pass.

    Idle traits drift a fixed fraction of their distance back to neutral:
    strength - (strength - neutral) * rate
    """
    config = config or IdentityConfig()
    last = parse_timestamp_as_of(entry.last_updated, now)
    if last is None or now - last < timedelta(days=config.trait_decay_days):
        return entry.strength
    drift = (entry.strength - config.neutral_strength) * config.trait_decay_rate
    return max(0.0, min(1.0, entry.strength - drift))


def apply_trait_decay(state: IdentityState, now: datetime,
                      config: IdentityConfig | None = None) -> None:
    for entry in state.traits:
        entry.strength = decay_trait(entry, now, config)


def apply_dream_decay(state: IdentityState, now: datetime,
                      config: IdentityConfig | None = None) -> tuple[list[str], list[str]]:
    """Demote stale active dreams, drop stale backlog dreams.

    Returns:
        (demoted titles, dropped titles)
    """
    config = config or IdentityConfig()
    active_cutoff = now - timedelta(days=config.dream_active_decay_days)
    backlog_cutoff = now - timedelta(days=config.dream_backlog_drop_days)

    stale = [
        entry.title for entry in state.dreams.active
        if _older_than(entry.last_mention, active_cutoff, now)
    ]
    for title in stale:
        demote_dream(state.dreams, DreamChange(
            title=title, priority=config.demoted_dream_priority, now=now,
        ))

    dropped = [
        entry.title for entry in state.dreams.backlog
        if _older_than(entry.last_mention, backlog_cutoff, now)
    ]
    state.dreams.backlog = [
        entry for entry in state.dreams.backlog if entry.title not in dropped
    ]
    return stale, dropped


def apply_decay(state: IdentityState, now: datetime,
                config: IdentityConfig | None = None) -> None:
    """One decay pass over traits and dreams."""
    apply_trait_decay(state, now, config)
    apply_dream_decay(state, now, config)


def _older_than(value: str | None, cutoff: datetime, now: datetime) -> bool:
    last = parse_timestamp_as_of(value, now)
    return last is not None and last <= cutoff
