"""Identity evolution. A persona's traits and dreams drift with conversation evidence.

One reflection cycle: load state, ask the model for updates, apply them
all-or-nothing, run decay, enforce caps, persist. Core beliefs are manual
only and never touched by the engine.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from persona_mind.config import IdentityConfig
from persona_mind.decay import apply_decay, parse_timestamp_as_of
from persona_mind.dreams import DreamAction, DreamChange, apply_dream_action, cap_dreams
from persona_mind.errors import IdentityStateError, ReflectionParseError
from persona_mind.models import IdentityState, IdentityTrait, Origin

logger = logging.getLogger(__name__)

ChatFn = Callable[[str, list[dict[str, str]]], str]

REFLECTION_SYSTEM_PROMPT = "You update identity state. Output only JSON."


# ── Persistence ───────────────────────────────────────────────────────


class IdentityStore:
    """One JSON document per persona."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def for_persona(cls, data_dir: str | Path, persona: str) -> IdentityStore:
        return cls(Path(data_dir) / f"identity-{persona}.json")

    def load(self) -> IdentityState:
        """Read the state, creating and persisting defaults on first use."""
        if not self.path.exists():
            state = IdentityState()
            self.save(state)
            return state
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise IdentityStateError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise IdentityStateError(f"{self.path} does not hold a JSON object")
        try:
            return IdentityState.from_dict(data)
        except (ValueError, TypeError, AttributeError) as exc:
            raise IdentityStateError(f"Malformed identity in {self.path}: {exc}") from exc

    def save(self, state: IdentityState) -> None:
        """Write to a temp file in the same directory, then atomically replace."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


# ── Model output ──────────────────────────────────────────────────────


class TraitUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    target_strength: float
    origin: str | None = None
    evidence: str | None = None


class DreamUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    action: str  # parsed into DreamAction when applied
    priority: int | None = None
    reason: str | None = None


class ReflectionOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trait_updates: list[TraitUpdate] = Field(default_factory=list)
    dream_updates: list[DreamUpdate] = Field(default_factory=list)


def extract_json_block(text: str) -> str | None:
    """First balanced {...} span. Braces inside JSON strings don't count."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None  # unbalanced


def parse_reflection_output(response: str) -> ReflectionOutput:
    """Validate the model's reply.

    Raises:
        ReflectionParseError: no JSON object, or one that doesn't fit the schema.
    """
    block = extract_json_block(response)
    if block is None:
        raise ReflectionParseError("No JSON object in reflection output")
    try:
        return ReflectionOutput.model_validate_json(block)
    except ValidationError as exc:
        raise ReflectionParseError(f"Invalid reflection output: {exc}") from exc


def build_reflection_prompt(state: IdentityState, summary: str,
                            recent_user_messages: list[str] | tuple[str, ...],
                            config: IdentityConfig | None = None) -> str:
    config = config or IdentityConfig()
    state_json = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
    recent = "\n".join(recent_user_messages)
    neutral = config.neutral_strength
    return (
        "You are updating an AI identity based on conversation analysis.\n\n"
        f"Current identity state (JSON):\n{state_json}\n\n"
        "RULES:\n"
        "1. Core: NEVER modify core.identity, core.beliefs or core.backstory. "
        "They are user-controlled.\n"
        f"2. Traits use a 0.0 to 1.0 scale, {neutral:.1f} is neutral.\n"
        "   - Make small changes (0.1 to 0.2) per conversation.\n"
        f"   - Unreinforced traits drift back to {neutral:.1f} after "
        f"{config.trait_decay_days} days.\n"
        "   - Only create a new trait on strong evidence across several messages.\n"
        "   - Set origin to \"manual\" if the user explicitly asked, \"inferred\" otherwise.\n"
        "   - Only update on NEW evidence. Do not re-apply a previous change.\n"
        f"3. Dreams: max {config.max_active_dreams} active, "
        f"{config.max_backlog_dreams} backlog.\n"
        "   - Check for an existing similar dream before adding one.\n"
        "   - Dreams reflect the user's own interests and goals, not generic aspirations.\n"
        "   - Prefer add_backlog for new goals.\n"
        "   - Promote to active only when the user repeatedly returns to it.\n\n"
        f"Conversation summary:\n{summary}\n\n"
        f"Recent user messages:\n{recent}\n\n"
        "Return ONLY valid JSON in this format:\n"
        "{\n"
        '  "trait_updates": [{"name": "trait_name", "target_strength": 0.6, '
        '"origin": "inferred", "evidence": "user said..."}],\n'
        '  "dream_updates": [{"title": "dream title", "action": "add_backlog", '
        '"priority": 2, "reason": "user mentioned..."}]\n'
        "}\n"
        "Dream actions: add_active, add_backlog, promote, demote, retire.\n"
        'If no changes are needed, return {"trait_updates": [], "dream_updates": []}.'
    )


# ── Applying updates ──────────────────────────────────────────────────


def apply_trait_updates(state: IdentityState, updates: list[TraitUpdate],
                        now: datetime) -> None:
    stamp = now.isoformat()
    for update in updates:
        name = update.name.strip().lower()
        if not name:
            continue
        strength = _clamp(update.target_strength)
        requested = Origin.parse(update.origin)
        evidence = (update.evidence or "").strip() or None

        existing = state.find_trait(name)
        if existing is None:
            state.traits.append(IdentityTrait(
                name=name,
                strength=strength,
                origin=requested,
                last_evidence=evidence,
                last_updated=stamp,
            ))
            continue
        existing.strength = strength
        existing.last_updated = stamp
        if evidence:
            existing.last_evidence = evidence
        if requested is Origin.MANUAL:
            existing.origin = Origin.MANUAL


def apply_dream_updates(state: IdentityState, updates: list[DreamUpdate],
                        now: datetime, config: IdentityConfig | None = None) -> None:
    config = config or IdentityConfig()
    for update in updates:
        title = update.title.strip()
        if not title:
            continue
        action = DreamAction.parse(update.action)
        if action is None:
            logger.warning("Ignoring unknown dream action %r for %r", update.action, title)
            continue
        priority = update.priority if update.priority is not None else config.default_dream_priority
        reason = (update.reason or "").strip() or None
        apply_dream_action(state.dreams, action, DreamChange(
            title=title, priority=priority, now=now, reason=reason,
        ))


def enforce_caps(state: IdentityState, config: IdentityConfig | None = None) -> None:
    """Strongest traits and highest-priority dreams survive."""
    config = config or IdentityConfig()
    state.traits.sort(key=lambda t: t.strength, reverse=True)
    del state.traits[config.max_traits:]
    cap_dreams(state.dreams, config.max_active_dreams, config.max_backlog_dreams)


def apply_reflection(state: IdentityState, output: ReflectionOutput, now: datetime,
                     config: IdentityConfig | None = None) -> None:
    apply_trait_updates(state, output.trait_updates, now)
    apply_dream_updates(state, output.dream_updates, now, config)
    enforce_caps(state, config)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# ── Engine ────────────────────────────────────────────────────────────


class IdentityEngine:
    """Runs reflection cycles against one persona's identity document."""

    def __init__(self, store: IdentityStore, chat_fn: ChatFn,
                 config: IdentityConfig | None = None) -> None:
        self.store = store
        self.chat_fn = chat_fn
        self.config = config or IdentityConfig()

    def reflect_and_update(self, summary: str,
                           recent_user_messages: list[str] | tuple[str, ...],
                           now: datetime | None = None) -> bool:
        """One best-effort cycle. Returns True when state was written."""
        now = now or datetime.now().astimezone()
        if now.tzinfo is None:
            now = now.astimezone()  # naive means local time

        try:
            state = self.store.load()
        except (IdentityStateError, OSError) as exc:
            logger.warning("Identity load failed, starting from defaults: %s", exc)
            state = IdentityState()

        if self._debounced(state, now):
            logger.debug("Reflection skipped, last one ran under %ds ago",
                         self.config.reflection_debounce_seconds)
            return False

        output = self._ask(state, summary, recent_user_messages)
        if output is not None:
            apply_reflection(state, output, now, self.config)
            logger.info("Applied %d trait and %d dream updates",
                        len(output.trait_updates), len(output.dream_updates))

        apply_decay(state, now, self.config)
        enforce_caps(state, self.config)

        stamp = now.isoformat()
        state.updated_at = stamp
        state.last_reflection_at = stamp
        try:
            self.store.save(state)
        except OSError as exc:
            logger.warning("Identity write failed: %s", exc)
            return False
        return True

    def _ask(self, state: IdentityState, summary: str,
             recent_user_messages) -> ReflectionOutput | None:
        prompt = build_reflection_prompt(state, summary, recent_user_messages, self.config)
        try:
            response = self.chat_fn(
                REFLECTION_SYSTEM_PROMPT, [{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            logger.warning("Reflection call failed: %s", exc)
            return None
        try:
            return parse_reflection_output(response)
        except ReflectionParseError as exc:
            logger.warning("Discarding reflection output: %s", exc)
            return None

    def _debounced(self, state: IdentityState, now: datetime) -> bool:
        last = parse_timestamp_as_of(state.last_reflection_at, now)
        if last is None:
            return False
        elapsed = now - last
        return timedelta(0) <= elapsed < timedelta(seconds=self.config.reflection_debounce_seconds)


# ── Persona prompt ────────────────────────────────────────────────────


def format_identity_prompt(state: IdentityState) -> str:
    """System-prompt fragment describing who the persona is right now."""
    lines: list[str] = []
    if state.core.identity.strip():
        lines.append(f"You are {state.core.identity.strip()}.")
    lines.extend(b.strip() for b in state.core.beliefs if b.strip())
    if state.core.backstory.strip():
        lines.append(f"Backstory: {state.core.backstory.strip()}")

    traits = [f"{t.name.strip()}: {t.strength:.1f}" for t in state.traits if t.name.strip()]
    if traits:
        lines.append(f"Behavioral traits: {', '.join(traits)}")

    active = [d.title for d in state.dreams.active]
    if active:
        lines.append(f"Current aspirations: {', '.join(active)}")
    return "\n\n".join(lines)


def primary_core_belief(state: IdentityState) -> str:
    return state.core.beliefs[0].strip() if state.core.beliefs else ""


def set_primary_core_belief(state: IdentityState, value: str) -> None:
    """Manual edit. Replaces the first belief; blank input removes it."""
    value = value.strip()
    if not value:
        del state.core.beliefs[:1]
    elif state.core.beliefs:
        state.core.beliefs[0] = value
    else:
        state.core.beliefs.append(value)
