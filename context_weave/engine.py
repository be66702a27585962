"""
Context engine facade.

Wires the store, embedding chain, indexing pipeline, assembler and memory
manager together at startup and tears them down on ``close()``. Hosts talk
to this class only.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path
from typing import Any

from context_weave.config import EngineConfig
from context_weave.context.assembler import ContextAssembler, ContextRequest
from context_weave.errors import Result
from context_weave.indexing.extractors import SyntaxExtractor
from context_weave.indexing.pipeline import IndexingPipeline
from context_weave.memory.manager import MemoryManager
from context_weave.models import (
    ContextItem,
    ContextResult,
    ContextSource,
    ContextType,
    Role,
    UserPattern,
    now_ms,
    stable_id,
)
from context_weave.network import NetworkMonitor, NetworkStatusOracle
from context_weave.rag.embedding_provider import Embedder, EmbeddingService, build_embedding_service
from context_weave.rag.vector_store import VectorStore, build_vector_store
from context_weave.storage.sqlite_store import ContextStore
from context_weave.workspace import LocalWorkspace, Workspace

LOG = logging.getLogger("engine")


class FileEvent(StrEnum):
    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


class ContextEngine:
    """
    Public entry point.

    Collaborators that are not passed in are built from ``config``: a
    ``LocalWorkspace`` on ``workspace_root``, a ``NetworkMonitor``, the
    default embedder chain and a Chroma vector index.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        workspace: Workspace | None = None,
        network: NetworkStatusOracle | None = None,
        embedders: list[Embedder] | None = None,
        vector_store: VectorStore | None = None,
        extractors: dict[str, SyntaxExtractor] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.workspace = workspace or LocalWorkspace(self.config.workspace_root)
        self._owns_network = network is None
        self.network: NetworkStatusOracle = network or NetworkMonitor(self.config.network)

        if embedders is not None:
            self.embeddings = EmbeddingService(embedders, self.network, self.config.embedding)
        else:
            self.embeddings = build_embedding_service(self.config.embedding, self.network)

        self._vector_store = vector_store
        self._extractors = extractors
        self.store: ContextStore | None = None
        self.pipeline: IndexingPipeline | None = None
        self.assembler: ContextAssembler | None = None
        self.memory: MemoryManager | None = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ── lifecycle ───────────────────────────────────────────────────────

    async def initialize(self, start_background: bool = True) -> bool:
        """
        Build and start every component.

        Args:
            start_background: Start network monitoring and schedule the
                warm-up workspace sweep.

        Returns:
            True when the relational store came up; the engine still works
            (with empty results) when it did not.
        """
        if self._initialized:
            return True

        if start_background and isinstance(self.network, NetworkMonitor):
            await self.network.start_monitoring()

        await self.embeddings.initialize()

        if self._vector_store is None:
            storage = self.config.storage
            try:
                self._vector_store = build_vector_store(
                    "chroma",
                    persist_directory=storage.vector_dir,
                    meta_path=storage.vector_meta_path,
                    dimension=self.embeddings.dimension,
                    collection_name=storage.collection_name,
                )
            except Exception:
                LOG.exception("Vector index unavailable; similarity search disabled")

        self.store = ContextStore(self.config.storage, self._vector_store)
        store_ok = self.store.initialize()

        self.pipeline = IndexingPipeline(
            self.store,
            self.embeddings,
            self.workspace,
            self.network,
            self.config.indexing,
            self._extractors,
        )
        self.assembler = ContextAssembler(self.store, self.embeddings, self.workspace, self.config.assembler)
        self.memory = MemoryManager(self.store, self.embeddings, self.config.memory)

        if start_background:
            self.pipeline.start()

        self._initialized = True
        LOG.info("Context engine initialized for %s", self.workspace.root)
        return store_ok

    async def close(self) -> None:
        if self.pipeline is not None:
            self.pipeline.dispose()
            await self.pipeline.wait_idle()
        if self.store is not None:
            self.store.close()
        await self.embeddings.aclose()
        if self._owns_network and isinstance(self.network, NetworkMonitor):
            await self.network.stop_monitoring()
        self._initialized = False
        LOG.info("Context engine closed")

    async def __aenter__(self) -> "ContextEngine":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require(self) -> None:
        if not self._initialized:
            raise RuntimeError("ContextEngine.initialize() has not been called")

    # ── context ─────────────────────────────────────────────────────────

    async def get_context(
        self,
        query: str = "",
        context_type: ContextType = ContextType.CHAT,
        **options: Any,
    ) -> ContextResult:
        """Context with the per-type default sources and budget unless overridden."""
        self._require()
        return await self.assembler.assemble(ContextRequest(query=query, context_type=context_type, **options))

    async def assemble_context(
        self,
        query: str = "",
        sources: list[ContextSource] | None = None,
        max_tokens: int | None = None,
        include_project_info: bool = False,
        conversation_id: str | None = None,
        **options: Any,
    ) -> ContextResult:
        self._require()
        return await self.assembler.assemble_context(
            query, sources, max_tokens, include_project_info, conversation_id, **options
        )

    # ── indexing ────────────────────────────────────────────────────────

    async def reindex_workspace(self) -> int:
        """Queue every not-yet-indexed workspace file; returns how many were queued."""
        self._require()
        return await self.pipeline.index_workspace_in_background()

    async def index_file(self, path: str | Path) -> Result[ContextItem]:
        self._require()
        return await self.pipeline.index_file(path)

    def force_index_file(self, path: str | Path) -> bool:
        self._require()
        return self.pipeline.force_index_file(path)

    def on_active_document_changed(self, path: str | Path) -> bool:
        self._require()
        return self.pipeline.queue_file_for_indexing(path, priority=True)

    def on_file_event(self, event: FileEvent | str, path: str | Path) -> bool:
        """Map workspace file events onto the pipeline."""
        self._require()
        event = FileEvent(event)
        if event == FileEvent.DELETED:
            return self.pipeline.remove_file(path)
        return self.pipeline.queue_file_for_indexing(path)

    async def drain_indexing(self) -> None:
        self._require()
        await self.pipeline.drain()

    # ── memory & usage ──────────────────────────────────────────────────

    async def add_message(self, conversation_id: str, role: Role | str, content: str) -> str:
        self._require()
        return await self.memory.add_message(conversation_id, role, content)

    async def get_conversation_context(self, conversation_id: str, query: str = "", max_tokens: int = 2000) -> str:
        self._require()
        return await self.memory.get_conversation_context(conversation_id, query, max_tokens)

    def track_usage_pattern(self, pattern: str, examples: list[str] | None = None) -> bool:
        """Record a usage pattern; repeated patterns bump their frequency."""
        self._require()
        stamp = now_ms()
        saved = self.store.save_user_pattern(
            UserPattern(
                id=stable_id(pattern),
                pattern=pattern,
                examples=list(examples or []),
                first_seen=stamp,
                last_seen=stamp,
            )
        )
        LOG.debug("Tracked usage pattern %r (saved=%s)", pattern, saved)
        return saved

    def clear_embedding_cache(self) -> None:
        self.embeddings.clear_cache()

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "workspace": str(self.workspace.root),
            "online": self.network.is_online(),
            "store_ready": self.store is not None and self.store.is_ready,
            "vectors_ready": self.store is not None and self.store.vectors_ready,
            "vector_count": len(self.store.vector_ids()) if self.store is not None else 0,
            "indexed_files": len(self.pipeline.indexed_files) if self.pipeline is not None else 0,
            "pending_files": len(self.pipeline.pending) if self.pipeline is not None else 0,
            "embedding_cache_size": len(self.embeddings.cache),
        }
