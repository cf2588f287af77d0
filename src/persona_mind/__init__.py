"""persona-mind: conversation recall, temporal references and an evolving persona identity."""

from persona_mind.config import MindConfig, configure_logging, load_config
from persona_mind.dates import resolve_date_reference, summary_range_for
from persona_mind.embeddings import numpy_embed, ollama_embed
from persona_mind.errors import EmbeddingError, IdentityStateError, MindError, ReflectionParseError
from persona_mind.identity import IdentityEngine, IdentityStore
from persona_mind.mind import Mind
from persona_mind.models import (
    Conversation, DateRange, IdentityState, IsoWeek, RetrievalSource, RetrievedMessage,
    Role, StoredMessage, Trace,
)
from persona_mind.retrieval import Retriever
from persona_mind.worker import MemoryWorker, ReflectionJob, RetrievalJob, WorkResult

__version__ = "0.1.0"
__all__ = [
    "Mind", "MindConfig", "load_config", "configure_logging",
    "Retriever", "IdentityEngine", "IdentityStore",
    "MemoryWorker", "RetrievalJob", "ReflectionJob", "WorkResult",
    "resolve_date_reference", "summary_range_for",
    "numpy_embed", "ollama_embed",
    "Conversation", "DateRange", "IdentityState", "IsoWeek", "RetrievalSource",
    "RetrievedMessage", "Role", "StoredMessage", "Trace",
    "MindError", "EmbeddingError", "ReflectionParseError", "IdentityStateError",
]
