"""
Error taxonomy and per-operation result type.

Components catch failures at the point they happen and hand back a
``Result`` (or a safe empty value); the caller decides whether to log and
default. Only programmer errors raise synchronously.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ContextEngineError(Exception):
    """Base exception for context engine failures."""

    pass


class IndexingFailure(ContextEngineError):
    """A file could not be read, was oversized, or could not be parsed."""

    pass


class EmbeddingUnavailable(ContextEngineError):
    """No embedder could produce a vector (local model absent, offline or unkeyed)."""

    pass


class StorageUnavailable(ContextEngineError):
    """The relational store or vector index is not initialized."""

    pass


class NetworkDegraded(ContextEngineError):
    """The network oracle reports offline; network-bound paths are skipped."""

    pass


@dataclass
class Result(Generic[T]):
    """
    Outcome of a single operation.

    A failed result carries the error that stopped it. A degraded result is
    ok and carries its value, plus the error describing what was skipped.
    """

    ok: bool
    value: T | None = None
    error: ContextEngineError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def degraded(cls, value: T, error: ContextEngineError) -> "Result[T]":
        return cls(ok=True, value=value, error=error)

    @classmethod
    def failure(cls, error: ContextEngineError) -> "Result[T]":
        return cls(ok=False, error=error)

    def unwrap_or(self, default: T) -> T:
        if self.ok and self.value is not None:
            return self.value
        return default
