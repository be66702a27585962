"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.embedding  Requires sentence-transformers model downloadable
    @pytest.mark.network    Requires outbound network access

Run:
    pytest                        # everything available locally
    pytest -m "not embedding"     # skip model-download tests
"""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pytest

from context_weave.config import (
    AssemblerConfig,
    EmbeddingConfig,
    EngineConfig,
    IndexingConfig,
    MemoryConfig,
    StorageConfig,
)
from context_weave.network import StaticNetwork
from context_weave.rag.embedding_provider import Embedder, EmbeddingService
from context_weave.rag.vector_store import VectorHit, VectorStore
from context_weave.storage.sqlite_store import ContextStore
from context_weave.workspace import LocalWorkspace

DIM = 16


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


def _network_available() -> bool:
    try:
        socket.create_connection(("www.gstatic.com", 443), timeout=3).close()
        return True
    except OSError:
        return False


_EMBEDDING_OK: Optional[bool] = None
_NETWORK_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")
    config.addinivalue_line("markers", "network: requires outbound network access")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _EMBEDDING_OK, _NETWORK_OK

    wants_embedding = any("embedding" in item.keywords for item in items)
    wants_network = any("network" in item.keywords for item in items)
    if wants_embedding and _EMBEDDING_OK is None:
        _EMBEDDING_OK = _embedding_model_available()
    if wants_network and _NETWORK_OK is None:
        _NETWORK_OK = _network_available()

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")
    skip_network = pytest.mark.skip(reason="No outbound network access")

    for item in items:
        if "embedding" in item.keywords and not _EMBEDDING_OK:
            item.add_marker(skip_embedding)
        if "network" in item.keywords and not _NETWORK_OK:
            item.add_marker(skip_network)


# ── Test doubles ─────────────────────────────────────────────────────────────


class InMemoryVectorStore(VectorStore):
    """Exact cosine search over a dict; keeps the VectorStore contract."""

    def __init__(self, dimension: int = DIM) -> None:
        self._dimension = dimension
        self._data: dict[int, tuple[list[float], dict[str, Any]]] = {}
        self.inserts = 0
        self.replaces = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def ids(self) -> list[int]:
        return list(self._data)

    def contains(self, vector_id: int) -> bool:
        return vector_id in self._data

    def insert(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        if vector_id in self._data:
            raise ValueError(f"duplicate id {vector_id}")
        self._data[vector_id] = (list(vector), dict(metadata))
        self.inserts += 1

    def replace(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        self._data[vector_id] = (list(vector), dict(metadata))
        self.replaces += 1

    def search(self, query: list[float], top_k: int = 10) -> list[VectorHit]:
        q = np.asarray(query, dtype=np.float64)
        scored = []
        for vid, (vec, meta) in self._data.items():
            v = np.asarray(vec, dtype=np.float64)
            denom = float(np.linalg.norm(q) * np.linalg.norm(v)) or 1.0
            scored.append(VectorHit(id=vid, vector=vec, score=float(q @ v) / denom, metadata=meta))
        scored.sort(key=lambda h: -h.score)
        return scored[:top_k]

    def delete(self, ids: list[int]) -> None:
        for vid in ids:
            self._data.pop(vid, None)

    def count(self) -> int:
        return len(self._data)


class FakeLocalEmbedder(Embedder):
    """Ready local embedder returning a fixed-size vector derived from text length."""

    name = "fake-local"

    def __init__(self, dim: int = DIM, ready: bool = True) -> None:
        self._dim = dim
        self._ready = ready
        self.calls = 0

    def is_ready(self) -> bool:
        return self._ready

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        out = []
        for t in texts:
            vec = [0.0] * self._dim
            vec[len(t) % self._dim] = 1.0
            out.append(vec)
        return out

    def dimension(self) -> int:
        return self._dim


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(dimension=DIM, use_sentence_transformers=False, use_ollama=False)


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(storage_dir=tmp_path / "storage")


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore(DIM)


@pytest.fixture
def store(storage_config, vector_store):
    s = ContextStore(storage_config, vector_store)
    assert s.initialize()
    yield s
    s.close()


@pytest.fixture
def online() -> StaticNetwork:
    return StaticNetwork(online=True)


@pytest.fixture
def embeddings(embedding_config, online) -> EmbeddingService:
    """Online, no local model: every call lands on the pseudo-embedding."""
    return EmbeddingService([], online, embedding_config)


@pytest.fixture
def workspace_dir(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def workspace(workspace_dir) -> LocalWorkspace:
    return LocalWorkspace(workspace_dir)


@pytest.fixture
def fast_indexing() -> IndexingConfig:
    return IndexingConfig(batch_delay_s=0.01, next_batch_delay_s=0.0, warmup_delay_s=0.0, sweep_pause_s=0.0)


@pytest.fixture
def engine_config(tmp_path, workspace_dir, embedding_config, fast_indexing) -> EngineConfig:
    return EngineConfig(
        workspace_root=workspace_dir,
        storage=StorageConfig(storage_dir=tmp_path / "engine-storage"),
        embedding=embedding_config,
        indexing=fast_indexing,
        assembler=AssemblerConfig(),
        memory=MemoryConfig(),
    )
