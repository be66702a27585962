"""
Background indexing pipeline.

Files reported by the workspace are filtered, queued in an insertion-ordered
set, and drained in small concurrent batches after a debounce delay. Each
file becomes a ContextItem, its functions and classes become CodeEntities,
and when embeddings are possible every one of them gets a vector.

Workflow per file:
1. Read content (skip oversized files)
2. Persist the file item with an initial importance score
3. Extract functions/classes and persist them as entities
4. Embed the file content, then each ``"<name> - <code>"``
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from pathlib import Path
from typing import Any, Coroutine

from context_weave.config import IndexingConfig
from context_weave.context.project_info import detect_project_info
from context_weave.errors import IndexingFailure, NetworkDegraded, Result, StorageUnavailable
from context_weave.indexing.extractors import Extraction, SyntaxExtractor, get_extractor
from context_weave.indexing.files import is_priority_source, language_for, should_exclude
from context_weave.models import (
    CodeEntity,
    ContextItem,
    EntityKind,
    EntityMeta,
    FileMeta,
    ItemType,
    now_ms,
    stable_id,
    vector_id_for,
)
from context_weave.network import NetworkStatusOracle
from context_weave.rag.embedding_provider import EmbeddingService
from context_weave.storage.sqlite_store import ContextStore
from context_weave.workspace import Workspace

LOG = logging.getLogger("indexing.pipeline")

_DAY_S = 24 * 60 * 60


class IndexingPipeline:
    """
    Debounced, batched file indexer.

    Must be used from within a running event loop: queueing schedules timers
    on the current loop.
    """

    def __init__(
        self,
        store: ContextStore,
        embeddings: EmbeddingService,
        workspace: Workspace,
        network: NetworkStatusOracle,
        config: IndexingConfig | None = None,
        extractors: dict[str, SyntaxExtractor] | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._workspace = workspace
        self._network = network
        self._config = config or IndexingConfig()
        self._extractors = extractors or {}

        self._queue: dict[str, None] = {}
        self._indexed: set[str] = set()
        self._processing = False
        self._disposed = False
        self._semaphore = asyncio.Semaphore(self._config.batch_size)

        self._debounce: asyncio.TimerHandle | None = None
        self._next_batch: asyncio.TimerHandle | None = None
        self._sweep: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    # ── state ───────────────────────────────────────────────────────────

    @property
    def pending(self) -> list[str]:
        return list(self._queue)

    @property
    def indexed_files(self) -> frozenset[str]:
        return frozenset(self._indexed)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def _normalize(self, path: str | Path) -> str:
        p = Path(path)
        if not p.is_absolute():
            p = self._workspace.root / p
        return str(p)

    # ── lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Load already-indexed paths and schedule the warm-up workspace sweep."""
        self._indexed.update(self._store.indexed_file_paths())
        LOG.debug("Loaded %d indexed files", len(self._indexed))
        loop = asyncio.get_running_loop()
        self._sweep = loop.call_later(
            self._config.warmup_delay_s,
            lambda: self._spawn(self.index_workspace_in_background()),
        )

    def dispose(self) -> None:
        """Stop scheduling work. In-flight files are left to finish."""
        self._disposed = True
        for handle in (self._debounce, self._next_batch, self._sweep):
            if handle is not None:
                handle.cancel()
        self._debounce = self._next_batch = self._sweep = None
        self._queue.clear()
        LOG.info("Indexing pipeline disposed")

    async def wait_idle(self) -> None:
        """Wait for every spawned batch and sweep to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── queueing ────────────────────────────────────────────────────────

    def queue_file_for_indexing(self, path: str | Path, priority: bool = False) -> bool:
        """
        Add *path* to the queue. Returns False when the path is excluded.

        A priority file moves to the front of the queue and is processed
        without waiting for the debounce delay.
        """
        if self._disposed:
            return False
        key = self._normalize(path)
        if should_exclude(key):
            return False

        if priority:
            self._queue.pop(key, None)
            self._queue = {key: None, **self._queue}
            if self._debounce is not None:
                self._debounce.cancel()
                self._debounce = None
            self._spawn(self._process_queue())
        else:
            self._queue[key] = None
            if self._debounce is not None:
                self._debounce.cancel()
            self._debounce = asyncio.get_running_loop().call_later(self._config.batch_delay_s, self._on_debounce)
        return True

    def force_index_file(self, path: str | Path) -> bool:
        """Re-index *path* even if it was indexed before."""
        self._indexed.discard(self._normalize(path))
        return self.queue_file_for_indexing(path, priority=True)

    def remove_file(self, path: str | Path) -> bool:
        key = self._normalize(path)
        self._indexed.discard(key)
        self._queue.pop(key, None)
        return self._store.delete_file(key)

    def _on_debounce(self) -> None:
        self._debounce = None
        if not self._disposed:
            self._spawn(self._process_queue())

    def _on_next_batch(self) -> None:
        self._next_batch = None
        if not self._disposed:
            self._spawn(self._process_queue())

    async def _process_queue(self) -> None:
        if self._processing or not self._queue:
            return

        self._processing = True
        try:
            batch = list(self._queue)[: self._config.batch_size]
            for path in batch:
                del self._queue[path]
            await asyncio.gather(*(self.index_file(p) for p in batch))
        finally:
            self._processing = False

        if self._queue and not self._disposed and self._next_batch is None:
            self._next_batch = asyncio.get_running_loop().call_later(
                self._config.next_batch_delay_s, self._on_next_batch
            )

    async def drain(self) -> None:
        """Process the queue to completion without waiting for timers."""
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        while self._queue or self._processing:
            if self._processing:
                await asyncio.sleep(0.01)
                continue
            await self._process_queue()

    # ── workspace sweep ─────────────────────────────────────────────────

    async def index_workspace_in_background(self) -> int:
        """Queue every not-yet-indexed source file in the workspace; returns the count queued."""
        result = await self.index_project_info()
        if not result.ok:
            LOG.warning("Project info not indexed: %s", result.error)

        limit = self._config.max_sweep_files
        try:
            files = await asyncio.to_thread(
                lambda: list(
                    itertools.islice(
                        (p for p in self._workspace.iter_files() if is_priority_source(p) and not should_exclude(p)),
                        limit,
                    )
                )
            )
        except OSError as exc:
            LOG.error("Error during workspace indexing: %s", exc)
            return 0

        LOG.info("Found %d files to index in the workspace", len(files))
        queued = 0
        for file_path in files:
            if self._disposed:
                break
            key = str(file_path)
            if key in self._indexed or key in self._queue:
                continue
            if self.queue_file_for_indexing(key):
                queued += 1
                if queued % self._config.max_queue_size == 0:
                    await asyncio.sleep(self._config.sweep_pause_s)

        LOG.info("Queued %d files for indexing", queued)
        return queued

    # ── per-file indexing ───────────────────────────────────────────────

    def calculate_importance(self, path: str, mtime: float | None = None) -> float:
        """Initial importance from extension, recency and depth."""
        score = 0.5
        if is_priority_source(path):
            score += 0.2

        if mtime is not None:
            age_days = (time.time() - mtime) / _DAY_S
            if age_days < 1:
                score += 0.3
            elif age_days < 7:
                score += 0.1

        if "/src/" in path.replace("\\", "/"):
            score += 0.1

        rel = os.path.relpath(path, self._workspace.root)
        if len(Path(rel).parts) <= 2:
            score += 0.1

        return min(1.0, score)

    async def index_file(self, path: str | Path) -> Result[ContextItem]:
        """Index one file now. Never raises; failures come back in the Result."""
        key = self._normalize(path)
        async with self._semaphore:
            try:
                return await self._index(key)
            except IndexingFailure as exc:
                LOG.warning("Skipping %s: %s", key, exc)
                return Result.failure(exc)
            except Exception as exc:
                LOG.exception("Error indexing file: %s", key)
                return Result.failure(IndexingFailure(f"{key}: {exc}"))

    async def _index(self, path: str) -> Result[ContextItem]:
        mtime: float | None = None
        try:
            stat = os.stat(path)
            mtime = stat.st_mtime
            if stat.st_size > self._config.max_file_size:
                LOG.info("Skipping large file: %s (%d bytes)", path, stat.st_size)
                return Result.success(None)
        except OSError:
            LOG.debug("No stat for %s; relying on workspace read", path)

        try:
            data = await asyncio.to_thread(self._workspace.read_bytes, path)
        except OSError as exc:
            raise IndexingFailure(f"unreadable: {exc}") from exc
        if len(data) > self._config.max_file_size:
            LOG.info("Skipping large file: %s (%d bytes)", path, len(data))
            return Result.success(None)
        if b"\x00" in data:
            raise IndexingFailure("binary content")

        content = data.decode("utf-8", errors="replace")
        language = language_for(path)
        item_id = stable_id(path)
        file_meta = FileMeta(item_id=item_id, path=path, language=language)

        item = ContextItem(
            id=item_id,
            type=ItemType.FILE,
            name=os.path.basename(path),
            path=path,
            language=language,
            content=content,
            line_start=0,
            line_end=len(content.split("\n")) - 1,
            size=len(content),
            last_accessed=now_ms(),
            importance_score=self.calculate_importance(path, mtime),
            metadata=file_meta,
        )
        if not self._store.save_context_item(item):
            return Result.failure(StorageUnavailable(f"could not persist {path}"))
        self._indexed.add(path)

        entities = self._save_entities(path, content, language)

        if self._can_embed():
            vector = await self._embeddings.generate_embedding(content)
            self._store.save_vector(vector_id_for(item_id), vector, file_meta)
            for entity in entities:
                vector = await self._embeddings.generate_embedding(f"{entity.name} - {entity.code}")
                self._store.save_vector(
                    vector_id_for(entity.id),
                    vector,
                    EntityMeta(
                        entity_id=entity.id,
                        name=entity.name,
                        entity_type=entity.type,
                        path=path,
                        language=language,
                    ),
                )
        else:
            LOG.debug("Offline without a local embedder; skipping vectors for %s", path)
            return Result.degraded(item, NetworkDegraded(f"vectors skipped for {path}"))

        LOG.debug("Indexed %s (%d entities)", path, len(entities))
        return Result.success(item)

    def _can_embed(self) -> bool:
        return self._network.is_online() or not self._embeddings.requires_network()

    async def index_project_info(self) -> Result[ContextItem]:
        """Persist the workspace's project summary and give it a vector."""
        info = await asyncio.to_thread(detect_project_info, self._workspace.root)
        if info is None:
            return Result.success(None)
        if not self._store.save_context_item(info):
            return Result.failure(StorageUnavailable("could not persist project info"))
        if not self._can_embed():
            return Result.degraded(info, NetworkDegraded("project info vector skipped"))
        vector = await self._embeddings.generate_embedding(info.content or "")
        self._store.save_vector(vector_id_for(info.id), vector, info.metadata)
        return Result.success(info)

    def _save_entities(self, path: str, content: str, language: str) -> list[CodeEntity]:
        extractor = get_extractor(language, self._extractors)
        try:
            extraction = extractor.extract(content)
        except Exception:
            LOG.exception("Error extracting entities from %s", path)
            extraction = Extraction()

        entities: list[CodeEntity] = []
        symbols = [(EntityKind.FUNCTION, s) for s in extraction.functions]
        symbols += [(EntityKind.CLASS, s) for s in extraction.classes.values()]
        for kind, symbol in symbols:
            entity = CodeEntity(
                id=CodeEntity.make_id(path, kind, symbol.name),
                name=symbol.name,
                type=kind,
                file_path=path,
                code=symbol.code,
                first_seen=symbol.start_line,
                last_seen=symbol.end_line,
                frequency=1,
            )
            if self._store.save_code_entity(entity):
                entities.append(entity)
        return entities
