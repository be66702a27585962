"""
Abstract vector index interface with a Chroma backend.

The index is keyed by the integer vector ids shared with the relational
store. A sidecar JSON file next to the collection records the dimension the
collection was created with; on startup the collection is reused only when
that dimension matches the embedding dimension, otherwise it is dropped and
recreated.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOG = logging.getLogger("rag.vector_store")

METRIC = "cosine"


@dataclass
class VectorHit:
    """A single nearest-neighbour result."""

    id: int
    vector: list[float]
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """
    Abstract interface for vector storage and similarity search.

    Implementations persist embeddings and support approximate
    nearest-neighbour queries by cosine distance.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Vector length the index was created with."""

    @abstractmethod
    def ids(self) -> list[int]:
        """All ids currently in the index."""

    @abstractmethod
    def contains(self, vector_id: int) -> bool:
        """Whether *vector_id* is present."""

    @abstractmethod
    def insert(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        """Add a new vector."""

    @abstractmethod
    def replace(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        """Overwrite the vector stored under an existing id."""

    @abstractmethod
    def search(self, query: list[float], top_k: int = 10) -> list[VectorHit]:
        """Nearest neighbours of *query*, best first."""

    @abstractmethod
    def delete(self, ids: list[int]) -> None:
        """Delete vectors by id."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of vectors in the index."""

    def upsert(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        if self.contains(vector_id):
            self.replace(vector_id, vector, metadata)
        else:
            self.insert(vector_id, vector, metadata)

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Chroma metadata values must be non-null scalars."""
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = str(value)
    return flat or {"kind": "unknown"}


class ChromaVectorStore(VectorStore):
    """
    Chroma persistent HNSW collection in cosine space.

    Args:
        persist_directory: Directory for the Chroma database.
        meta_path: Sidecar JSON recording ``{dimension, metric, created, type}``.
        dimension: Expected embedding dimension.
        collection_name: Chroma collection name.
    """

    def __init__(
        self,
        persist_directory: Path,
        meta_path: Path,
        dimension: int = 384,
        collection_name: str = "context_vectors",
    ) -> None:
        import chromadb
        from chromadb.config import Settings

        self._dimension = dimension
        self._meta_path = Path(meta_path)
        self._collection_name = collection_name

        Path(persist_directory).mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=str(persist_directory),
            settings=Settings(anonymized_telemetry=False),
        )

        recorded = self._read_meta()
        if recorded is not None and recorded.get("dimension") != dimension:
            LOG.warning(
                "Vector index dimension %s does not match embedding dimension %d; recreating",
                recorded.get("dimension"),
                dimension,
            )
            self._drop_collection()
            recorded = None

        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": METRIC},
        )
        if recorded is None:
            self._created = datetime.now(timezone.utc).isoformat()
            self._write_meta()
            LOG.info("Created new vector index (dimension %d) at %s", dimension, persist_directory)
        else:
            self._created = recorded.get("created") or datetime.now(timezone.utc).isoformat()
            LOG.info("Loaded vector index with %d entries", self._collection.count())

    @property
    def dimension(self) -> int:
        return self._dimension

    def _drop_collection(self) -> None:
        existing = [getattr(c, "name", c) for c in self._client.list_collections()]
        if self._collection_name in existing:
            self._client.delete_collection(self._collection_name)

    def _read_meta(self) -> dict[str, Any] | None:
        if not self._meta_path.exists():
            return None
        try:
            return json.loads(self._meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOG.warning("Unreadable vector index metadata %s: %s", self._meta_path, exc)
            return None

    def _write_meta(self) -> None:
        payload = {
            "dimension": self._dimension,
            "metric": METRIC,
            "created": self._created,
            "updated": datetime.now(timezone.utc).isoformat(),
            "type": "hnsw",
            "count": self._collection.count(),
        }
        self._meta_path.parent.mkdir(parents=True, exist_ok=True)
        self._meta_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _check(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise ValueError(f"Vector has dimension {len(vector)}, index expects {self._dimension}")

    def ids(self) -> list[int]:
        result = self._collection.get(include=[])
        return [int(i) for i in result["ids"]]

    def contains(self, vector_id: int) -> bool:
        result = self._collection.get(ids=[str(vector_id)], include=[])
        return len(result["ids"]) > 0

    def insert(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        self._check(vector)
        self._collection.add(
            ids=[str(vector_id)],
            embeddings=[list(vector)],
            metadatas=[_flatten_metadata(metadata)],
        )
        self._write_meta()

    def replace(self, vector_id: int, vector: list[float], metadata: dict[str, Any]) -> None:
        self._check(vector)
        self._collection.update(
            ids=[str(vector_id)],
            embeddings=[list(vector)],
            metadatas=[_flatten_metadata(metadata)],
        )
        self._write_meta()

    def search(self, query: list[float], top_k: int = 10) -> list[VectorHit]:
        self._check(query)
        n = min(top_k, self._collection.count())
        if n <= 0:
            return []

        results = self._collection.query(
            query_embeddings=[list(query)],
            n_results=n,
            include=["embeddings", "metadatas", "distances"],
        )

        ids = results["ids"][0] if results.get("ids") is not None else []
        distances = results.get("distances")
        embeddings = results.get("embeddings")
        metadatas = results.get("metadatas")

        out: list[VectorHit] = []
        for i, doc_id in enumerate(ids):
            distance = float(distances[0][i]) if distances is not None else 1.0
            vector = [float(x) for x in embeddings[0][i]] if embeddings is not None else []
            meta = dict(metadatas[0][i] or {}) if metadatas is not None else {}
            # cosine distance → similarity
            out.append(VectorHit(id=int(doc_id), vector=vector, score=1.0 - distance, metadata=meta))
        return out

    def delete(self, ids: list[int]) -> None:
        if ids:
            self._collection.delete(ids=[str(i) for i in ids])
            self._write_meta()

    def count(self) -> int:
        return self._collection.count()


def build_vector_store(
    backend: str = "chroma",
    **kwargs: Any,
) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "chroma" (only supported backend currently)
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "chroma":
        return ChromaVectorStore(**kwargs)
    raise ValueError(f"Unknown vector store backend: {backend!r}. Supported: 'chroma'")
