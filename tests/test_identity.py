"""Tests for the identity evolution engine."""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from persona_mind.config import IdentityConfig
from persona_mind.dreams import DreamAction, dreams_are_similar
from persona_mind.errors import IdentityStateError, ReflectionParseError
from persona_mind.identity import (
    DreamUpdate,
    IdentityEngine,
    IdentityStore,
    TraitUpdate,
    apply_dream_updates,
    apply_trait_updates,
    build_reflection_prompt,
    enforce_caps,
    extract_json_block,
    format_identity_prompt,
    parse_reflection_output,
    primary_core_belief,
    set_primary_core_belief,
)
from persona_mind.models import (
    CoreBeliefs, DreamEntry, DreamSet, IdentityState, IdentityTrait, Origin,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmp:
        yield IdentityStore.for_persona(tmp, "default")


def _reply(trait_updates=(), dream_updates=()):
    return json.dumps({"trait_updates": list(trait_updates),
                       "dream_updates": list(dream_updates)})


# ── Persistence ────────────────────────────────────────────────────────


class TestIdentityStore:
    def test_first_load_creates_defaults(self, store):
        assert not store.path.exists()
        state = store.load()
        assert state.core.identity == "Assistant"
        assert store.path.exists()
        assert store.path.name == "identity-default.json"

    def test_round_trip(self, store):
        state = IdentityState(
            core=CoreBeliefs(identity="Ada", beliefs=["be kind"], backstory="A helper."),
            traits=[IdentityTrait("curiosity", 0.7, Origin.MANUAL, "asked a lot", NOW.isoformat())],
            dreams=DreamSet(active=[DreamEntry("learn rust", 1, last_mention=NOW.isoformat())]),
            updated_at=NOW.isoformat(),
        )
        store.save(state)
        loaded = store.load()
        assert loaded == state

    def test_last_reflection_omitted_when_unset(self, store):
        store.save(IdentityState())
        assert "last_reflection_at" not in json.loads(store.path.read_text())

    def test_no_temp_files_left(self, store):
        store.save(IdentityState())
        store.save(IdentityState())
        assert os.listdir(store.path.parent) == [store.path.name]

    def test_corrupt_file(self, store):
        store.path.write_text("{not json")
        with pytest.raises(IdentityStateError):
            store.load()

    @pytest.mark.parametrize("document", [
        {"traits": [{"name": "humor", "strength": "high"}]},
        {"dreams": {"active": [{"title": "t", "priority": None}]}},
        {"traits": "x"},
        {"core": "Ada"},
    ])
    def test_wrong_field_types(self, store, document):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps(document))
        with pytest.raises(IdentityStateError):
            store.load()

    def test_lenient_fields(self, store):
        store.path.write_text(json.dumps({
            "traits": [{"name": "humor", "origin": "MANUAL", "extra": 1}],
            "dreams": {"backlog": [{"title": "paint", "priority": 0}]},
        }))
        state = store.load()
        assert state.traits[0].strength == 0.5
        assert state.traits[0].origin == Origin.MANUAL
        assert state.dreams.backlog[0].priority == 1


# ── Parsing model output ───────────────────────────────────────────────


class TestParsing:
    def test_extract_first_balanced_block(self):
        text = 'Sure! {"a": {"b": 1}} and also {"c": 2}'
        assert extract_json_block(text) == '{"a": {"b": 1}}'

    def test_braces_inside_strings(self):
        text = 'x {"reason": "user said } and {", "n": 1} y'
        assert json.loads(extract_json_block(text)) == {"reason": "user said } and {", "n": 1}

    def test_escaped_quotes(self):
        text = r'{"reason": "he said \"}\" loudly"}'
        assert extract_json_block(text) == text

    def test_no_block(self):
        assert extract_json_block("no json here") is None
        assert extract_json_block('{"open": ') is None

    def test_parse_valid(self):
        output = parse_reflection_output("```json\n" + _reply(
            [{"name": "humor", "target_strength": 0.6}],
            [{"title": "learn rust", "action": "add_backlog"}],
        ) + "\n```")
        assert output.trait_updates[0].name == "humor"
        assert output.dream_updates[0].priority is None

    def test_parse_missing_required_field(self):
        with pytest.raises(ReflectionParseError):
            parse_reflection_output(_reply([{"name": "humor"}]))

    def test_parse_wrong_type(self):
        with pytest.raises(ReflectionParseError):
            parse_reflection_output('{"trait_updates": "lots"}')

    def test_parse_no_json(self):
        with pytest.raises(ReflectionParseError):
            parse_reflection_output("I could not decide.")


# ── Trait updates ──────────────────────────────────────────────────────


class TestTraitUpdates:
    def test_insert_normalized(self):
        state = IdentityState()
        apply_trait_updates(state, [TraitUpdate(name="  Humor ", target_strength=0.6)], NOW)
        [entry] = state.traits
        assert entry.name == "humor"
        assert entry.strength == 0.6
        assert entry.origin == Origin.INFERRED
        assert entry.last_updated == NOW.isoformat()

    def test_update_existing_and_clamp(self):
        state = IdentityState(traits=[IdentityTrait("humor", 0.5, last_evidence="old")])
        apply_trait_updates(state, [TraitUpdate(name="HUMOR", target_strength=1.7)], NOW)
        assert len(state.traits) == 1
        assert state.traits[0].strength == 1.0
        assert state.traits[0].last_evidence == "old"

    def test_clamp_low(self):
        state = IdentityState()
        apply_trait_updates(state, [TraitUpdate(name="x", target_strength=-0.4)], NOW)
        assert state.traits[0].strength == 0.0

    def test_origin_never_downgraded(self):
        state = IdentityState(traits=[IdentityTrait("humor", 0.5, Origin.MANUAL)])
        apply_trait_updates(state, [
            TraitUpdate(name="humor", target_strength=0.6, origin="inferred", evidence="joked"),
        ], NOW)
        assert state.traits[0].origin == Origin.MANUAL
        assert state.traits[0].last_evidence == "joked"

    def test_origin_upgraded(self):
        state = IdentityState(traits=[IdentityTrait("humor", 0.5)])
        apply_trait_updates(state, [
            TraitUpdate(name="humor", target_strength=0.6, origin="manual"),
        ], NOW)
        assert state.traits[0].origin == Origin.MANUAL

    def test_empty_name_skipped(self):
        state = IdentityState()
        apply_trait_updates(state, [TraitUpdate(name="   ", target_strength=0.6)], NOW)
        assert state.traits == []


# ── Dream updates ──────────────────────────────────────────────────────


class TestDreamUpdates:
    def test_add_backlog_default_priority(self):
        state = IdentityState()
        apply_dream_updates(state, [DreamUpdate(title="learn rust", action="add_backlog")], NOW)
        [dream] = state.dreams.backlog
        assert dream.priority == 2
        assert dream.last_mention == NOW.isoformat()

    def test_add_is_idempotent(self):
        state = IdentityState()
        updates = [DreamUpdate(title="learn rust", action="add_active", priority=1,
                               reason="said so")]
        apply_dream_updates(state, updates, NOW)
        apply_dream_updates(state, updates, NOW)
        assert len(state.dreams.active) == 1
        assert state.dreams.active[0].progress_note == "said so"

    def test_rephrased_title_updates_existing(self):
        state = IdentityState()
        apply_dream_updates(state, [DreamUpdate(title="learn rust", action="add_backlog",
                                                priority=3)], NOW)
        later = NOW + timedelta(days=1)
        apply_dream_updates(state, [DreamUpdate(title="Learn the Rust language",
                                                action="add_backlog", priority=1,
                                                reason="asked again")], later)
        [dream] = state.dreams.backlog
        assert dream.title == "learn rust"
        assert dream.priority == 1
        assert dream.last_mention == later.isoformat()
        assert dream.progress_note == "asked again"

    def test_unrelated_titles_kept_apart(self):
        state = IdentityState()
        apply_dream_updates(state, [
            DreamUpdate(title="learn rust", action="add_backlog"),
            DreamUpdate(title="run a marathon", action="add_backlog"),
        ], NOW)
        assert [d.title for d in state.dreams.backlog] == ["learn rust", "run a marathon"]

    def test_add_active_moves_out_of_backlog(self):
        state = IdentityState(dreams=DreamSet(backlog=[DreamEntry("learn rust")]))
        apply_dream_updates(state, [DreamUpdate(title="learn rust", action="add_active")], NOW)
        assert [d.title for d in state.dreams.active] == ["learn rust"]
        assert state.dreams.backlog == []

    def test_promote_and_demote(self):
        state = IdentityState(dreams=DreamSet(
            backlog=[DreamEntry("paint", origin=Origin.MANUAL)],
            active=[DreamEntry("run", priority=1)],
        ))
        apply_dream_updates(state, [
            DreamUpdate(title="paint", action="promote", priority=1),
            DreamUpdate(title="run", action="demote"),
        ], NOW)
        assert [d.title for d in state.dreams.active] == ["paint"]
        assert state.dreams.active[0].origin == Origin.MANUAL
        assert [d.title for d in state.dreams.backlog] == ["run"]

    def test_promote_missing_is_noop(self):
        state = IdentityState(dreams=DreamSet(active=[DreamEntry("run")]))
        apply_dream_updates(state, [DreamUpdate(title="fly", action="promote")], NOW)
        assert [d.title for d in state.dreams.active] == ["run"]
        assert state.dreams.backlog == []

    def test_retire_removes_everywhere(self):
        state = IdentityState(dreams=DreamSet(active=[DreamEntry("run")],
                                              backlog=[DreamEntry("paint")]))
        apply_dream_updates(state, [
            DreamUpdate(title="run", action="retire"),
            DreamUpdate(title="paint", action="retire"),
        ], NOW)
        assert state.dreams.active == [] and state.dreams.backlog == []

    def test_unknown_action_ignored(self):
        state = IdentityState()
        apply_dream_updates(state, [DreamUpdate(title="x", action="celebrate")], NOW)
        assert state.dreams.active == [] and state.dreams.backlog == []

    def test_title_similarity(self):
        assert dreams_are_similar("learn rust", "learn the rust language")
        assert dreams_are_similar("Visit Japan", "visit japan in spring")
        assert not dreams_are_similar("learn rust", "learn piano")
        assert not dreams_are_similar("the", "a")

    def test_action_parsing(self):
        assert DreamAction.parse(" Add_Backlog ") is DreamAction.ADD_BACKLOG
        assert DreamAction.parse("explode") is None


# ── Caps ───────────────────────────────────────────────────────────────


class TestCaps:
    def test_traits_keep_strongest(self):
        state = IdentityState(traits=[IdentityTrait(f"t{i}", i / 10) for i in range(10)])
        enforce_caps(state)
        assert len(state.traits) == 8
        assert {t.name for t in state.traits} == {f"t{i}" for i in range(2, 10)}

    def test_dreams_keep_highest_priority(self):
        state = IdentityState(dreams=DreamSet(
            active=[DreamEntry(f"a{p}", priority=p) for p in (5, 1, 4, 2, 3)],
            backlog=[DreamEntry(f"b{i}", priority=3) for i in range(7)],
        ))
        enforce_caps(state)
        assert [d.title for d in state.dreams.active] == ["a1", "a2", "a3"]
        assert [d.title for d in state.dreams.backlog] == [f"b{i}" for i in range(5)]

    def test_custom_caps(self):
        state = IdentityState(traits=[IdentityTrait(f"t{i}") for i in range(4)])
        enforce_caps(state, IdentityConfig(max_traits=2))
        assert len(state.traits) == 2


# ── Engine ─────────────────────────────────────────────────────────────


class TestEngine:
    def test_applies_updates(self, store):
        chat = mock.Mock(return_value=_reply(
            [{"name": "curiosity", "target_strength": 0.7, "evidence": "many questions"}],
            [{"title": "learn rust", "action": "add_backlog", "reason": "mentioned it"}],
        ))
        engine = IdentityEngine(store, chat)
        assert engine.reflect_and_update("talked about rust", ["I want to learn rust"], NOW)

        state = store.load()
        assert state.find_trait("curiosity").strength == 0.7
        assert state.dreams.backlog[0].title == "learn rust"
        assert state.updated_at == NOW.isoformat()
        assert state.last_reflection_at == NOW.isoformat()

        system_prompt, messages = chat.call_args.args
        assert system_prompt == "You update identity state. Output only JSON."
        assert "I want to learn rust" in messages[0]["content"]
        assert "talked about rust" in messages[0]["content"]

    def test_malformed_output_applies_nothing(self, store):
        store.save(IdentityState(traits=[IdentityTrait("humor", 0.6, last_updated=NOW.isoformat())]))
        chat = mock.Mock(return_value='{"trait_updates": [{"name": "humor", '
                                      '"target_strength": 0.9}], "dream_updates": [{"title": 3}]}')
        assert IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        state = store.load()
        assert state.find_trait("humor").strength == 0.6
        assert state.dreams.backlog == []

    def test_chat_failure_still_decays(self, store):
        store.save(IdentityState(traits=[
            IdentityTrait("curiosity", 0.9, last_updated=(NOW - timedelta(days=25)).isoformat()),
        ]))
        chat = mock.Mock(side_effect=RuntimeError("model offline"))
        assert IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        assert store.load().find_trait("curiosity").strength == pytest.approx(0.86)

    def test_core_never_touched(self, store):
        core = CoreBeliefs(identity="Ada", beliefs=["be kind"], backstory="b")
        store.save(IdentityState(core=core))
        chat = mock.Mock(return_value='{"trait_updates": [], "dream_updates": [], '
                                      '"core": {"identity": "Evil"}}')
        IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        assert store.load().core == core

    def test_debounce(self, store):
        chat = mock.Mock(return_value=_reply())
        engine = IdentityEngine(store, chat)
        assert engine.reflect_and_update("s", [], NOW)
        assert not engine.reflect_and_update("s", [], NOW + timedelta(seconds=60))
        assert chat.call_count == 1
        assert engine.reflect_and_update("s", [], NOW + timedelta(seconds=121))
        assert chat.call_count == 2

    def test_corrupt_state_replaced_by_defaults(self, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("garbage")
        chat = mock.Mock(return_value=_reply([{"name": "humor", "target_strength": 0.6}]))
        assert IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        assert store.load().find_trait("humor") is not None

    def test_wrong_field_types_replaced_by_defaults(self, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps({"traits": [{"name": "humor", "strength": "high"}]}))
        chat = mock.Mock(return_value=_reply([{"name": "patience", "target_strength": 0.6}]))
        assert IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        state = store.load()
        assert state.find_trait("humor") is None
        assert state.find_trait("patience").strength == 0.6

    def test_naive_now_after_aware_history(self, store):
        engine = IdentityEngine(store, mock.Mock(return_value=_reply(
            [{"name": "humor", "target_strength": 0.8}],
        )))
        assert engine.reflect_and_update("s", [], datetime(2026, 1, 1, tzinfo=timezone.utc))

        engine.chat_fn = mock.Mock(return_value=_reply())
        assert engine.reflect_and_update("s", [], datetime(2026, 3, 1))
        state = store.load()
        assert state.find_trait("humor").strength == pytest.approx(0.77)
        assert datetime.fromisoformat(state.last_reflection_at).tzinfo is not None

    def test_caps_enforced_after_updates(self, store):
        updates = [{"name": f"t{i}", "target_strength": 0.1 * i} for i in range(1, 11)]
        chat = mock.Mock(return_value=_reply(updates))
        IdentityEngine(store, chat).reflect_and_update("s", [], NOW)
        assert len(store.load().traits) == 8


# ── Prompts ────────────────────────────────────────────────────────────


class TestPrompts:
    def test_reflection_prompt_contents(self):
        state = IdentityState(traits=[IdentityTrait("humor", 0.6)])
        prompt = build_reflection_prompt(state, "we joked", ["haha", "nice one"])
        assert '"humor"' in prompt
        assert "we joked" in prompt
        assert "haha\nnice one" in prompt
        assert "0.5 is neutral" in prompt
        assert "max 3 active, 5 backlog" in prompt

    def test_format_identity_prompt(self):
        state = IdentityState(
            core=CoreBeliefs(identity="Ada", beliefs=["Be kind.", "  "], backstory="Built in Lyon."),
            traits=[IdentityTrait("humor", 0.64)],
            dreams=DreamSet(active=[DreamEntry("learn rust")], backlog=[DreamEntry("paint")]),
        )
        assert format_identity_prompt(state) == (
            "You are Ada.\n\nBe kind.\n\nBackstory: Built in Lyon.\n\n"
            "Behavioral traits: humor: 0.6\n\nCurrent aspirations: learn rust"
        )

    def test_empty_identity_prompt(self):
        state = IdentityState(core=CoreBeliefs(identity=""))
        assert format_identity_prompt(state) == ""

    def test_primary_core_belief(self):
        state = IdentityState()
        assert primary_core_belief(state) == ""
        set_primary_core_belief(state, "  be honest ")
        assert primary_core_belief(state) == "be honest"
        state.core.beliefs.append("be brief")
        set_primary_core_belief(state, "be direct")
        assert state.core.beliefs == ["be direct", "be brief"]
        set_primary_core_belief(state, "")
        assert state.core.beliefs == ["be brief"]
