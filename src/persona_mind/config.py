"""Configuration loading from environment variables and persona-mind.toml."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_DATA_DIR = Path.home() / ".persona-mind"
_CONFIG_FILENAME = "persona-mind.toml"


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    provider: str = "ollama"
    model: str = "nomic-embed-text"
    base_url: str = "http://localhost:11434"
    timeout: float = 20.0
    min_chars: int = 10
    max_chars: int = 2000


@dataclass
class RetrievalConfig:
    """Hybrid retrieval tuning. Values are empirical, not load-bearing."""

    limit: int = 6
    similarity_threshold: float = 0.35
    rrf_k: float = 60.0
    backfill_threshold: int = 10
    backfill_batch: int = 50
    recent_user_limit: int = 50
    heuristic_score: float = 0.01


@dataclass
class IdentityConfig:
    """Identity evolution caps and decay windows."""

    max_traits: int = 8
    max_active_dreams: int = 3
    max_backlog_dreams: int = 5
    default_dream_priority: int = 2
    demoted_dream_priority: int = 3
    neutral_strength: float = 0.5
    trait_decay_rate: float = 0.1
    trait_decay_days: int = 21
    dream_active_decay_days: int = 30
    dream_backlog_drop_days: int = 60
    reflection_debounce_seconds: int = 120


@dataclass
class MindConfig:
    """Top-level configuration."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    data_dir: Path = _DEFAULT_DATA_DIR
    persona: str = "default"
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "history.db"


def load_config(config_path: Path | None = None) -> MindConfig:
    """Load configuration from environment variables and optional persona-mind.toml.

    Priority: environment variables > persona-mind.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_DATA_DIR / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    embedding_data = file_data.get("embedding", {})
    retrieval_data = file_data.get("retrieval", {})
    identity_data = file_data.get("identity", {})

    embedding = EmbeddingConfig(
        provider=os.getenv("PERSONA_MIND_EMBED_PROVIDER",
                           embedding_data.get("provider", "ollama")),
        model=os.getenv("PERSONA_MIND_EMBED_MODEL",
                        embedding_data.get("model", "nomic-embed-text")),
        base_url=os.getenv("PERSONA_MIND_OLLAMA_URL",
                           embedding_data.get("base_url", "http://localhost:11434")),
        timeout=float(os.getenv("PERSONA_MIND_EMBED_TIMEOUT",
                                embedding_data.get("timeout", 20.0))),
        min_chars=int(embedding_data.get("min_chars", 10)),
        max_chars=int(embedding_data.get("max_chars", 2000)),
    )
    retrieval = RetrievalConfig(
        limit=int(retrieval_data.get("limit", 6)),
        similarity_threshold=float(os.getenv(
            "PERSONA_MIND_SIMILARITY_THRESHOLD",
            retrieval_data.get("similarity_threshold", 0.35),
        )),
        rrf_k=float(retrieval_data.get("rrf_k", 60.0)),
        backfill_threshold=int(retrieval_data.get("backfill_threshold", 10)),
        backfill_batch=int(retrieval_data.get("backfill_batch", 50)),
        recent_user_limit=int(retrieval_data.get("recent_user_limit", 50)),
        heuristic_score=float(retrieval_data.get("heuristic_score", 0.01)),
    )
    defaults = IdentityConfig()
    identity = IdentityConfig(**{
        name: type(getattr(defaults, name))(identity_data[name])
        for name in vars(defaults)
        if name in identity_data
    })

    return MindConfig(
        embedding=embedding,
        retrieval=retrieval,
        identity=identity,
        data_dir=Path(os.getenv("PERSONA_MIND_DATA_DIR",
                                file_data.get("data_dir", str(_DEFAULT_DATA_DIR)))),
        persona=os.getenv("PERSONA_MIND_PERSONA", file_data.get("persona", "default")),
        log_level=os.getenv("PERSONA_MIND_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
