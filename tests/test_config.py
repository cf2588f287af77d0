"""Tests for configuration loading."""

import logging
import os
from pathlib import Path

import pytest

from persona_mind import config as config_module
from persona_mind.config import MindConfig, configure_logging, load_config


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """No stray config files or PERSONA_MIND_* variables leak into a test."""
    for name in list(os.environ):
        if name.startswith("PERSONA_MIND_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_DEFAULT_DATA_DIR", tmp_path / "home")
    return tmp_path


def test_defaults(isolated):
    cfg = load_config()
    assert cfg.embedding.provider == "ollama"
    assert cfg.retrieval.rrf_k == 60.0
    assert cfg.retrieval.similarity_threshold == 0.35
    assert cfg.identity.max_traits == 8
    assert cfg.identity.trait_decay_days == 21
    assert cfg.persona == "default"
    assert cfg.data_dir == isolated / "home"


def test_db_path():
    cfg = MindConfig(data_dir=Path("/tmp/minds"))
    assert cfg.db_path == Path("/tmp/minds/history.db")


def test_file_values(isolated):
    path = isolated / "custom.toml"
    path.write_text(
        'persona = "ada"\n'
        'data_dir = "/srv/ada"\n'
        "[embedding]\n"
        'provider = "numpy"\n'
        "max_chars = 500\n"
        "[retrieval]\n"
        "rrf_k = 30\n"
        "limit = 10\n"
        "[identity]\n"
        "max_traits = 12\n"
        "trait_decay_rate = 0.2\n"
        "unknown_key = 1\n"
    )
    cfg = load_config(path)
    assert cfg.persona == "ada"
    assert cfg.data_dir == Path("/srv/ada")
    assert cfg.embedding.provider == "numpy"
    assert cfg.embedding.max_chars == 500
    assert cfg.retrieval.rrf_k == 30.0
    assert cfg.retrieval.limit == 10
    assert cfg.identity.max_traits == 12
    assert cfg.identity.trait_decay_rate == 0.2
    assert cfg.identity.max_active_dreams == 3


def test_cwd_file_found(isolated):
    (isolated / "persona-mind.toml").write_text('persona = "from-cwd"\n')
    assert load_config().persona == "from-cwd"


def test_env_overrides_file(isolated, monkeypatch):
    path = isolated / "custom.toml"
    path.write_text('persona = "ada"\n[embedding]\nprovider = "numpy"\n')
    monkeypatch.setenv("PERSONA_MIND_PERSONA", "grace")
    monkeypatch.setenv("PERSONA_MIND_EMBED_PROVIDER", "ollama")
    monkeypatch.setenv("PERSONA_MIND_SIMILARITY_THRESHOLD", "0.5")
    monkeypatch.setenv("PERSONA_MIND_DATA_DIR", str(isolated / "data"))
    cfg = load_config(path)
    assert cfg.persona == "grace"
    assert cfg.embedding.provider == "ollama"
    assert cfg.retrieval.similarity_threshold == 0.5
    assert cfg.data_dir == isolated / "data"


def test_configure_logging(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))
    configure_logging("debug")
    assert calls[0]["level"] == logging.DEBUG
    assert "%(name)s" in calls[0]["format"]
