"""Tests for trait and dream decay."""

from datetime import datetime, timedelta, timezone

import pytest

from persona_mind.config import IdentityConfig
from persona_mind.decay import apply_decay, decay_trait, parse_timestamp, parse_timestamp_as_of
from persona_mind.models import DreamEntry, DreamSet, IdentityState, IdentityTrait, Origin

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _ago(days: float) -> str:
    return (NOW - timedelta(days=days)).isoformat()


# ── Traits ─────────────────────────────────────────────────────────────


class TestTraitDecay:
    def test_idle_trait_drifts_to_neutral(self):
        entry = IdentityTrait("curiosity", strength=0.9, last_updated=_ago(25))
        assert decay_trait(entry, NOW) == pytest.approx(0.86)

    def test_weak_trait_drifts_up(self):
        entry = IdentityTrait("assertiveness", strength=0.1, last_updated=_ago(30))
        assert decay_trait(entry, NOW) == pytest.approx(0.14)

    def test_recent_trait_untouched(self):
        entry = IdentityTrait("humor", strength=0.9, last_updated=_ago(20))
        assert decay_trait(entry, NOW) == 0.9

    def test_exactly_at_window(self):
        entry = IdentityTrait("humor", strength=0.9, last_updated=_ago(21))
        assert decay_trait(entry, NOW) == pytest.approx(0.86)

    def test_no_timestamp_untouched(self):
        entry = IdentityTrait("humor", strength=0.9)
        assert decay_trait(entry, NOW) == 0.9

    def test_neutral_trait_stays(self):
        entry = IdentityTrait("patience", strength=0.5, last_updated=_ago(100))
        assert decay_trait(entry, NOW) == pytest.approx(0.5)

    def test_custom_rate(self):
        config = IdentityConfig(trait_decay_rate=0.5, trait_decay_days=7)
        entry = IdentityTrait("humor", strength=1.0, last_updated=_ago(8))
        assert decay_trait(entry, NOW, config) == pytest.approx(0.75)


# ── Dreams ─────────────────────────────────────────────────────────────


class TestDreamDecay:
    def _state(self, active=(), backlog=()):
        return IdentityState(dreams=DreamSet(active=list(active), backlog=list(backlog)))

    def test_stale_active_demoted(self):
        dream = DreamEntry("learn rust", priority=1, origin=Origin.MANUAL,
                           last_mention=_ago(31), progress_note="halfway")
        state = self._state(active=[dream])
        apply_decay(state, NOW)

        assert state.dreams.active == []
        [demoted] = state.dreams.backlog
        assert demoted.title == "learn rust"
        assert demoted.priority == 3
        assert demoted.origin == Origin.MANUAL
        assert demoted.last_mention == NOW.isoformat()

    def test_fresh_active_kept(self):
        state = self._state(active=[DreamEntry("learn rust", last_mention=_ago(10))])
        apply_decay(state, NOW)
        assert [d.title for d in state.dreams.active] == ["learn rust"]

    def test_stale_backlog_dropped(self):
        state = self._state(backlog=[
            DreamEntry("old idea", last_mention=_ago(61)),
            DreamEntry("new idea", last_mention=_ago(5)),
        ])
        apply_decay(state, NOW)
        assert [d.title for d in state.dreams.backlog] == ["new idea"]

    def test_demoted_dream_not_dropped_same_pass(self):
        state = self._state(active=[DreamEntry("ancient", last_mention=_ago(400))])
        apply_decay(state, NOW)
        assert [d.title for d in state.dreams.backlog] == ["ancient"]

    def test_missing_timestamp_kept(self):
        state = self._state(active=[DreamEntry("timeless")],
                            backlog=[DreamEntry("also timeless")])
        apply_decay(state, NOW)
        assert len(state.dreams.active) == 1
        assert len(state.dreams.backlog) == 1


class TestParseTimestamp:
    def test_rfc3339(self):
        assert parse_timestamp("2026-10-18T12:00:00Z") == NOW
        assert parse_timestamp("2026-10-18T14:00:00+02:00") == NOW

    def test_naive_takes_reference_zone(self):
        assert parse_timestamp("2026-10-18T12:00:00", timezone.utc) == NOW

    def test_garbage(self):
        assert parse_timestamp("yesterday-ish") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_aligned_to_naive_reference(self):
        parsed = parse_timestamp_as_of("2026-10-18T12:00:00+00:00", datetime(2026, 10, 18))
        assert parsed.tzinfo is None
        assert parsed == NOW.astimezone().replace(tzinfo=None)

    def test_aligned_to_aware_reference(self):
        assert parse_timestamp_as_of("2026-10-18T12:00:00", NOW) == NOW


class TestMixedAwareness:
    def test_naive_now_against_aware_history(self):
        naive_now = NOW.astimezone().replace(tzinfo=None)
        entry = IdentityTrait("humor", strength=0.9, last_updated=_ago(25))
        assert decay_trait(entry, naive_now) == pytest.approx(0.86)

    def test_dream_decay_with_naive_now(self):
        naive_now = NOW.astimezone().replace(tzinfo=None)
        state = IdentityState(dreams=DreamSet(
            active=[DreamEntry("learn rust", last_mention=_ago(31))],
            backlog=[DreamEntry("old idea", last_mention=_ago(61))],
        ))
        apply_decay(state, naive_now)
        assert state.dreams.active == []
        assert [d.title for d in state.dreams.backlog] == ["learn rust"]
