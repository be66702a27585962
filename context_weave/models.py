"""
Core data models for the context engine.

Pydantic models are used for everything that crosses the storage or MCP
boundary so that payloads can be produced with ``model_dump(mode="json")``.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def stable_id(key: str) -> str:
    """Deterministic hex id for a path or composite key."""
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def vector_id_for(key: str) -> int:
    """Integer id shared by the vector index and the relational row for *key*."""
    return int(stable_id(key)[:15], 16)


class ItemType(StrEnum):
    FILE = "file"
    ENTITY = "entity"
    FUNCTION = "function"
    CLASS = "class"
    CONVERSATION_HISTORY = "conversation_history"
    PROJECT_INFO = "project_info"


class EntityKind(StrEnum):
    FUNCTION = "function"
    CLASS = "class"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ContextSource(StrEnum):
    ACTIVE_FILE = "active_file"
    OPEN_FILES = "open_files"
    WORKSPACE = "workspace"
    CONVERSATION_HISTORY = "conversation_history"


class ContextType(StrEnum):
    CODE_COMPLETION = "code_completion"
    CHAT = "chat"
    AGENT = "agent"


# ── Metadata tagged union ────────────────────────────────────────────────────


class FileMeta(BaseModel):
    kind: Literal["file"] = "file"
    item_id: str
    path: str | None = None
    language: str | None = None


class EntityMeta(BaseModel):
    kind: Literal["entity"] = "entity"
    entity_id: str
    name: str | None = None
    entity_type: EntityKind | None = None
    path: str | None = None
    language: str | None = None


class ProjectMeta(BaseModel):
    kind: Literal["project"] = "project"
    project_type: str = "unknown"
    name: str | None = None


VectorMeta = Annotated[Union[FileMeta, EntityMeta, ProjectMeta], Field(discriminator="kind")]


class _MetaEnvelope(BaseModel):
    meta: VectorMeta


def parse_meta(data: dict[str, Any] | None) -> FileMeta | EntityMeta | ProjectMeta | None:
    """Validate a raw metadata dict into its tagged variant (None if unknown)."""
    if not data or "kind" not in data:
        return None
    return _MetaEnvelope.model_validate({"meta": data}).meta


# ── Stored records ───────────────────────────────────────────────────────────


class ContextItem(BaseModel):
    """Any unit of retrievable information offered to the assistant."""

    id: str
    type: ItemType
    name: str
    path: str | None = None
    language: str | None = None
    content: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    size: int | None = None
    last_accessed: int | None = None
    importance_score: float = 0.0
    vector_id: str | None = None
    metadata: VectorMeta | None = None
    # Per-query score; the store never writes it.
    relevance: float | None = None


class CodeEntity(BaseModel):
    """An extracted function or class with its source span."""

    id: str
    name: str
    type: EntityKind
    file_path: str
    code: str
    first_seen: int | None = None
    last_seen: int | None = None
    frequency: int = 1
    vector_id: str | None = None

    @staticmethod
    def make_id(file_path: str, kind: EntityKind, name: str) -> str:
        tag = "func" if kind == EntityKind.FUNCTION else "class"
        return stable_id(f"{file_path}:{tag}:{name}")


class VectorEntry(BaseModel):
    """A nearest-neighbour hit, hydrated from the relational tables."""

    id: int
    vector: list[float]
    score: float = 0.0
    metadata: VectorMeta | None = None
    item: ContextItem | None = None
    entity: CodeEntity | None = None


class ConversationMessage(BaseModel):
    id: str
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    importance: float | None = None
    relevance: float | None = Field(default=None, exclude=True)
    combined_score: float | None = Field(default=None, exclude=True)


class Conversation(BaseModel):
    id: str
    title: str
    messages: list[ConversationMessage] = Field(default_factory=list)
    model_id: str = "unknown"
    system_prompt: str | None = None
    temperature: float = 0.7
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UserPattern(BaseModel):
    id: str
    type: str = "usage_pattern"
    pattern: str
    examples: list[str] = Field(default_factory=list)
    frequency: int = 1
    first_seen: int | None = None
    last_seen: int | None = None


class ContextResult(BaseModel):
    """The sole contract consumed by prompt-formatting and UI collaborators."""

    items: list[ContextItem] = Field(default_factory=list)
    token_count: int = 0
    truncated: bool = False
    available_sources: list[ContextSource] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "ContextResult":
        return cls()
