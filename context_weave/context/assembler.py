"""
Context assembly.

Gathers candidate items from the requested sources, scores them against the
query, and greedily fits them into a token budget.

Sources and their fixed relevance:
- active file: 1.0 (optionally the selection only)
- open documents: 0.8
- workspace similarity search: 0.9 / 0.85 decaying by 0.05 per rank, floor 0.1
- conversation history transcript: 0.7
- project information: 0.5
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field

from context_weave.config import AssemblerConfig
from context_weave.context.budget import TokenEstimator, fit_to_budget
from context_weave.context.project_info import detect_project_info
from context_weave.errors import ContextEngineError
from context_weave.indexing.files import language_for
from context_weave.models import (
    ContextItem,
    ContextResult,
    ContextSource,
    ContextType,
    EntityKind,
    EntityMeta,
    FileMeta,
    ItemType,
    ProjectMeta,
    Role,
)
from context_weave.rag.embedding_provider import EmbeddingService
from context_weave.rag.similarity import cosine_similarity
from context_weave.storage.sqlite_store import ContextStore
from context_weave.workspace import Document, Workspace

LOG = logging.getLogger("context.assembler")

DEFAULT_MAX_TOKENS: dict[ContextType, int] = {
    ContextType.CODE_COMPLETION: 2000,
    ContextType.CHAT: 6000,
    ContextType.AGENT: 4000,
}

DEFAULT_SOURCES: dict[ContextType, list[ContextSource]] = {
    ContextType.CODE_COMPLETION: [ContextSource.ACTIVE_FILE, ContextSource.WORKSPACE],
    ContextType.CHAT: [ContextSource.ACTIVE_FILE, ContextSource.WORKSPACE, ContextSource.CONVERSATION_HISTORY],
    ContextType.AGENT: [
        ContextSource.ACTIVE_FILE,
        ContextSource.OPEN_FILES,
        ContextSource.WORKSPACE,
        ContextSource.CONVERSATION_HISTORY,
    ],
}

UNSCORED_RELEVANCE = 0.5
FAILED_SCORE_RELEVANCE = 0.3


class ContextRequest(BaseModel):
    """Options for a single context assembly."""

    query: str = ""
    context_type: ContextType = ContextType.CHAT
    sources: list[ContextSource] | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    include_project_info: bool = False
    conversation_id: str | None = None
    selection_only: bool = False
    limit_files: int | None = Field(default=None, gt=0)

    def resolved_sources(self) -> list[ContextSource]:
        return list(self.sources) if self.sources is not None else list(DEFAULT_SOURCES[self.context_type])

    def resolved_max_tokens(self) -> int:
        return self.max_tokens or DEFAULT_MAX_TOKENS[self.context_type]


def _document_item(doc: Document, relevance: float, selection_only: bool = False) -> ContextItem:
    line_start, line_end = 0, doc.line_count - 1
    content = doc.text
    if selection_only and doc.selection is not None:
        line_start, line_end = doc.selection
        content = doc.selected_text()
    return ContextItem(
        id=doc.path,
        type=ItemType.FILE,
        name=os.path.basename(doc.path),
        path=doc.path,
        language=doc.language if doc.language != "plaintext" else language_for(doc.path),
        content=content,
        line_start=line_start,
        line_end=line_end,
        relevance=relevance,
    )


class ContextAssembler:
    """Builds a token-bounded, relevance-ordered ``ContextResult``."""

    def __init__(
        self,
        store: ContextStore,
        embeddings: EmbeddingService,
        workspace: Workspace,
        config: AssemblerConfig | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._workspace = workspace
        self._config = config or AssemblerConfig()
        self._estimator = TokenEstimator(self._config)

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    async def assemble_context(
        self,
        query: str = "",
        sources: list[ContextSource] | None = None,
        max_tokens: int | None = None,
        include_project_info: bool = False,
        conversation_id: str | None = None,
        **options,
    ) -> ContextResult:
        request = ContextRequest(
            query=query,
            sources=sources,
            max_tokens=max_tokens,
            include_project_info=include_project_info,
            conversation_id=conversation_id,
            **options,
        )
        return await self.assemble(request)

    async def assemble(self, request: ContextRequest) -> ContextResult:
        """Never raises; any unexpected failure yields an empty result."""
        try:
            return await self._assemble(request)
        except Exception:
            LOG.exception("Error assembling context")
            return ContextResult.empty()

    async def _assemble(self, request: ContextRequest) -> ContextResult:
        candidates: list[ContextItem] = []
        available: list[ContextSource] = []
        seen_paths: set[str] = set()

        for source in request.resolved_sources():
            if source == ContextSource.ACTIVE_FILE:
                items = self._active_file_items(request.selection_only)
            elif source == ContextSource.OPEN_FILES:
                items = self._open_file_items(request.limit_files or self._config.limit_files, seen_paths)
            elif source == ContextSource.WORKSPACE:
                items = await self._workspace_items(request.query, request.limit_files or self._config.workspace_limit)
            elif source == ContextSource.CONVERSATION_HISTORY:
                items = self._history_items(request.conversation_id)
            else:
                raise ValueError(f"Unknown context source: {source!r}")

            seen_paths.update(i.path for i in items if i.path)
            candidates.extend(items)
            if items:
                available.append(source)

        if request.include_project_info:
            info = detect_project_info(self._workspace.root)
            if info is not None:
                candidates.append(info)

        scored = await self.score_items(candidates, request.query)
        result = fit_to_budget(scored, request.resolved_max_tokens(), self._estimator)
        result.available_sources = available
        LOG.debug(
            "Assembled %d/%d items (%d tokens, truncated=%s)",
            len(result.items),
            len(candidates),
            result.token_count,
            result.truncated,
        )
        return result

    # ── sources ─────────────────────────────────────────────────────────

    def _active_file_items(self, selection_only: bool) -> list[ContextItem]:
        doc = self._workspace.active_document()
        if doc is None:
            return []
        return [_document_item(doc, 1.0, selection_only)]

    def _open_file_items(self, limit: int, seen_paths: set[str]) -> list[ContextItem]:
        docs = [d for d in self._workspace.open_documents() if d.path not in seen_paths]
        return [_document_item(d, 0.8) for d in docs[:limit]]

    async def _workspace_items(self, query: str, limit: int) -> list[ContextItem]:
        if not query:
            return []
        query_vector = await self._embeddings.generate_embedding(query)
        entries = self._store.find_similar_vectors(query_vector, limit * 2)

        items: list[ContextItem] = []
        seen_paths: set[str] = set()
        for entry in entries:
            meta = entry.metadata
            if isinstance(meta, FileMeta):
                item = entry.item or self._store.get_context_item(meta.item_id)
                if item is None or (item.path and item.path in seen_paths):
                    continue
                if item.path:
                    seen_paths.add(item.path)
                relevance = max(0.1, 0.9 - len(items) * 0.05)
                items.append(item.model_copy(update={"relevance": relevance}))
            elif isinstance(meta, EntityMeta):
                entity = entry.entity or self._store.get_code_entity(meta.entity_id)
                if entity is None:
                    continue
                relevance = max(0.1, 0.85 - len(items) * 0.05)
                items.append(
                    ContextItem(
                        id=entity.id,
                        type=ItemType.CLASS if entity.type == EntityKind.CLASS else ItemType.FUNCTION,
                        name=entity.name,
                        path=entity.file_path,
                        language=meta.language,
                        content=entity.code,
                        vector_id=entity.vector_id,
                        relevance=relevance,
                    )
                )
            elif isinstance(meta, ProjectMeta) or meta is None:
                continue
            else:
                raise TypeError(f"Unknown vector metadata: {type(meta).__name__}")

            if len(items) >= limit:
                break
        return items

    def _history_items(self, conversation_id: str | None) -> list[ContextItem]:
        if conversation_id:
            conversation = self._store.load_conversation(conversation_id)
        else:
            recent = self._store.load_conversations(limit=1)
            conversation = recent[0] if recent else None
        if conversation is None or not conversation.messages:
            return []

        labels = {Role.USER: "User", Role.ASSISTANT: "Assistant", Role.SYSTEM: "System"}
        transcript = "\n\n".join(f"{labels[m.role]}: {m.content}" for m in conversation.messages)
        return [
            ContextItem(
                id=f"history-{conversation.id}",
                type=ItemType.CONVERSATION_HISTORY,
                name=f"Conversation: {conversation.title}",
                content=transcript,
                relevance=0.7,
            )
        ]

    # ── scoring ─────────────────────────────────────────────────────────

    async def score_items(self, items: list[ContextItem], query: str) -> list[ContextItem]:
        """
        Items ordered by relevance, highest first.

        Items without a relevance are scored by cosine similarity between
        the query and ``name + content``; a failed embedding scores 0.3.
        """
        if not query or len(items) <= 1:
            scored = [
                i if i.relevance is not None else i.model_copy(update={"relevance": UNSCORED_RELEVANCE})
                for i in items
            ]
        elif all(i.relevance is not None for i in items):
            scored = list(items)
        else:
            query_vector = await self._embeddings.generate_embedding(query)
            scored = []
            for item in items:
                if item.relevance is not None:
                    scored.append(item)
                    continue
                text = item.name + ("\n" + item.content if item.content else "")
                try:
                    vector = await self._embeddings.generate_embedding(text)
                    relevance = cosine_similarity(query_vector, vector)
                except (ValueError, ContextEngineError) as exc:
                    LOG.warning("Scoring %s failed: %s", item.id, exc)
                    relevance = FAILED_SCORE_RELEVANCE
                scored.append(item.model_copy(update={"relevance": relevance}))

        return sorted(scored, key=lambda i: -(i.relevance or 0.0))
