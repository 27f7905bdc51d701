"""Typed failures raised by the conversational retrieval chain.

Every error aborts the whole invocation; nothing is written to memory.
"""
from __future__ import annotations


class ChainError(Exception):
    """Base class for chain failures."""


class ValidationError(ChainError):
    """A required call-payload key is missing."""


class ConfigurationError(ChainError):
    """Invalid or contradictory configuration (unknown strategy, two filters)."""


class ProtocolError(ChainError):
    """An upstream transform broke its output contract."""


class BackendError(ChainError):
    """The retrieval, embedding or generation backend failed.

    The original exception is kept as ``__cause__``.
    """
