#!/usr/bin/env python3
"""
persona-mind demo: recall, recap lookups and identity evolution.

No LLM needed. No API keys. Just run it. A scripted chat function stands in
for the model during reflection.
"""

import json
import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path

from persona_mind import Mind, configure_logging, numpy_embed


def header(text):
    print(f"\n{'='*64}")
    print(f"  {text}")
    print(f"{'='*64}\n")


def show_recall(mind, query):
    print(f"  > {query}")
    for m in mind.recall(query):
        print(f"    [{m.source.value:9}] {m.score:.4f} | {m.content[:55]}")
    print()


def scripted_chat(system_prompt, messages):
    """Pretends to be the model: notices the user's interest in Rust."""
    return json.dumps({
        "trait_updates": [
            {"name": "curiosity", "target_strength": 0.7, "evidence": "asked many questions"},
        ],
        "dream_updates": [
            {"title": "learn rust", "action": "add_backlog", "priority": 2,
             "reason": "mentioned wanting to learn it"},
        ],
    })


def main():
    configure_logging("WARNING")
    tmp = Path(tempfile.mkdtemp())
    mind = Mind(tmp / "history.db", embed_fn=numpy_embed(), chat_fn=scripted_chat)
    today = date.today()

    header("PERSONA-MIND: memory demo")

    # ── History ────────────────────────────────────────────────────────

    last_week = datetime.now().astimezone() - timedelta(days=7)
    mind.record_conversation("assistant", [
        ("user", "i like apples"),
        ("user", "i prefer tea over coffee"),
        ("assistant", "Noted, tea it is."),
        ("user", "I want to learn rust this year"),
    ], summary="Food preferences and a plan to learn Rust",
        created_at=last_week.isoformat())
    mind.record_conversation("assistant", [
        ("user", "the weather is nice today"),
        ("user", "can you explain the borrow checker?"),
    ], summary="Weather and Rust ownership")
    print(f"  {mind.count} messages stored.\n")

    # ── Recall ─────────────────────────────────────────────────────────

    header("Recall: dense + sparse, fused")
    show_recall(mind, "rust borrow checker")
    show_recall(mind, "what do I like")

    # ── Recaps ─────────────────────────────────────────────────────────

    header("Recaps: temporal references")
    for query in ("what did we talk about last week?", "recap today"):
        found = mind.summaries_for(query, today=today)
        print(f"  > {query}")
        for convo in found:
            print(f"    {convo.created_at[:10]} | {convo.summary}")
        print()

    # ── Identity ───────────────────────────────────────────────────────

    header("Identity: one reflection cycle")
    mind.reflect("The user talked about food and wants to learn Rust.")
    state = mind.identity()
    for entry in state.traits:
        print(f"  trait  {entry.name:12} {entry.strength:.2f} ({entry.origin.value})")
    for dream in state.dreams.backlog:
        print(f"  dream  {dream.title:12} backlog, priority {dream.priority}")
    print()
    print(mind.identity_prompt())

    mind.close()


if __name__ == "__main__":
    main()
