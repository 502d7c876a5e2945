"""
Error taxonomy for the bookrag pipeline.

The boundary layers (CLI, HTTP API) catch these types to choose the
user-visible message; nothing inside the pipeline maps them to text.

    RAGError
    +-- InvalidInputError        bad request shape or bad config, never retried
    +-- TransientProviderError   timeout / rate limit, retried with backoff
    |   +-- EmbeddingProviderError
    +-- ContentPolicyError       generation refused by policy, never retried
    +-- IndexIntegrityError      dimension / metric / model-version mismatch

"No relevant evidence" is deliberately absent: it is a normal terminal
state of the query pipeline, not a failure.
"""
from __future__ import annotations


class RAGError(Exception):
    """Base class for every error raised by bookrag."""


class InvalidInputError(RAGError, ValueError):
    """The caller or operator supplied something unusable."""


class TransientProviderError(RAGError):
    """An external model provider timed out, rate-limited, or is briefly unavailable."""


class EmbeddingProviderError(TransientProviderError):
    """The embedding provider failed for a batch."""


class ContentPolicyError(RAGError):
    """The generation provider refused the request on policy grounds."""


class IndexIntegrityError(RAGError):
    """A write would mix incompatible vectors in one collection."""
