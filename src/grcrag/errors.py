"""Exception types raised by the answering engine."""

from __future__ import annotations


class ValidationError(ValueError):
    """Raised when a request is rejected before any collaborator is called."""


class GenerationError(RuntimeError):
    """Raised by a generation provider that could not produce a completion."""
