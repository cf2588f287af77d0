"""Exception types raised at module seams."""

from __future__ import annotations


class MindError(Exception):
    """Base class for persona-mind errors."""


class EmbeddingError(MindError):
    """An embedding provider could not produce a vector."""


class ReflectionParseError(MindError):
    """The reflection response did not contain a valid update payload."""


class IdentityStateError(MindError):
    """The identity document could not be read or decoded."""
