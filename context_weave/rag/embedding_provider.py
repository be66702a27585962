"""
Embedding provider chain.

Local model (sentence-transformers or Ollama) → remote API (OpenAI) →
deterministic pseudo-embedding. The service picks the first embedder whose
preconditions hold; any failure, timeout or wrong-sized vector falls through
to the pseudo-embedding so callers always get a vector.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from collections import OrderedDict

import httpx

from context_weave.config import EmbeddingConfig
from context_weave.errors import EmbeddingUnavailable
from context_weave.network import NetworkStatusOracle

LOG = logging.getLogger("rag.embedding_provider")

_WHITESPACE_RE = re.compile(r"\s+")


class Embedder(ABC):
    """Abstract interface for text → embedding vector conversion."""

    name: str = "embedder"
    requires_network: bool = False

    async def initialize(self) -> None:
        """Probe or load the backend. Must not raise."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the backend can currently serve requests."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Returns a list of float vectors, one per input text.

        Raises:
            EmbeddingUnavailable: The backend cannot serve the request.
        """

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""

    async def aclose(self) -> None:
        """Release resources. Override if needed."""
        pass


class SentenceTransformerEmbedder(Embedder):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions, fast, good for code).
    Model loading and encoding run in a worker thread.
    """

    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", dim: int = 384, load_timeout_s: float = 60.0) -> None:
        self._model_name = model_name
        self._dim = dim
        self._load_timeout_s = load_timeout_s
        self._model = None

    async def initialize(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            LOG.warning("sentence-transformers is not installed; local model disabled")
            return

        LOG.info("Loading embedding model: %s", self._model_name)
        try:
            model = await asyncio.wait_for(
                asyncio.to_thread(SentenceTransformer, self._model_name),
                timeout=self._load_timeout_s,
            )
        except Exception as exc:
            LOG.warning("Local embedding model %s unavailable: %s", self._model_name, exc)
            return

        model_dim = model.get_sentence_embedding_dimension()
        if model_dim != self._dim:
            LOG.warning(
                "Local model %s has dimension %s, index expects %d; local model disabled",
                self._model_name,
                model_dim,
                self._dim,
            )
            return
        self._model = model

    def is_ready(self) -> bool:
        return self._model is not None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if self._model is None:
            raise EmbeddingUnavailable(f"model {self._model_name} not loaded")
        if not texts:
            return []
        embeddings = await asyncio.to_thread(self._model.encode, texts, show_progress_bar=False)
        return [e.tolist() for e in embeddings]

    def dimension(self) -> int:
        return self._dim


class OllamaEmbedder(Embedder):
    """
    Local embedding via a running Ollama instance.

    Ready only when the server answers the probe and the model's dimension
    matches the index.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dim: int = 384,
        timeout: float = 5.0,
        probe_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._model = model
        self._dim = dim
        self._probe_timeout = probe_timeout
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._ready = False

    async def initialize(self) -> None:
        try:
            resp = await self._client.post(
                "/api/embeddings",
                json={"model": self._model, "prompt": "test"},
                timeout=self._probe_timeout,
            )
        except httpx.HTTPError as exc:
            LOG.info("Ollama not reachable at %s: %s", self._base_url, exc)
            return

        if resp.status_code != 200:
            LOG.warning(
                "Ollama running but model '%s' unavailable (status %d). Pull with: ollama pull %s",
                self._model,
                resp.status_code,
                self._model,
            )
            return

        probe = resp.json().get("embedding") or []
        if len(probe) != self._dim:
            LOG.warning("Ollama model %s has dimension %d, index expects %d", self._model, len(probe), self._dim)
            return
        self._ready = True
        LOG.info("Using Ollama (%s) for local embeddings", self._model)

    def is_ready(self) -> bool:
        return self._ready

    async def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            try:
                resp = await self._client.post("/api/embeddings", json={"model": self._model, "prompt": text})
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise EmbeddingUnavailable(f"Ollama request failed: {exc}") from exc
            embedding = resp.json().get("embedding")
            if not embedding:
                raise EmbeddingUnavailable("Invalid response format from Ollama")
            vectors.append([float(x) for x in embedding])
        return vectors

    def dimension(self) -> int:
        return self._dim

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIEmbedder(Embedder):
    """Remote embedding via the OpenAI embeddings API (requires an API key)."""

    name = "openai"
    requires_network = True

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        dim: int = 384,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._dim = dim
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def initialize(self) -> None:
        if not self._api_key:
            LOG.warning("No OpenAI API key found for embeddings. Context matching will be limited.")

    def is_ready(self) -> bool:
        return bool(self._api_key)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not self._api_key:
            raise EmbeddingUnavailable("No API key provided for embedding generation")
        headers = {"Authorization": f"Bearer {self._api_key}"}
        body = {"input": texts, "model": self._model, "dimensions": self._dim}
        try:
            resp = await self._client.post("/embeddings", headers=headers, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingUnavailable(f"Embedding API request failed: {exc}") from exc

        data = resp.json().get("data") or []
        if len(data) != len(texts) or any("embedding" not in row for row in data):
            raise EmbeddingUnavailable("Invalid response format from embedding API")
        ordered = sorted(data, key=lambda row: row.get("index", 0))
        return [[float(x) for x in row["embedding"]] for row in ordered]

    def dimension(self) -> int:
        return self._dim

    async def aclose(self) -> None:
        await self._client.aclose()


def pseudo_embedding(text: str, dim: int = 384) -> list[float]:
    """
    Deterministic unit-length vector derived from the character codes of *text*.

    Not semantically meaningful, but stable across runs and usable for
    cosine similarity with zero external dependencies.
    """
    seed = 0
    for ch in text:
        seed = (seed * 31 + ord(ch)) & 0xFFFFFFFF

    vector = []
    for i in range(dim):
        x = math.sin(seed + i) * 10000
        vector.append(x - math.floor(x))

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return vector
    return [v / norm for v in vector]


class PseudoEmbedder(Embedder):
    """Always-available deterministic fallback."""

    name = "pseudo"

    def __init__(self, dim: int = 384) -> None:
        self._dim = dim

    def is_ready(self) -> bool:
        return True

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [pseudo_embedding(t, self._dim) for t in texts]

    def dimension(self) -> int:
        return self._dim


class EmbeddingCache:
    """
    Bounded insertion-order cache.

    Entries are evicted oldest-inserted first once the capacity is exceeded;
    reads do not refresh an entry's position.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = capacity
        self._data: OrderedDict[tuple[str, int], list[float]] = OrderedDict()

    @staticmethod
    def key_for(text: str) -> tuple[str, int]:
        return (text[:100], len(text))

    def get(self, text: str) -> list[float] | None:
        return self._data.get(self.key_for(text))

    def put(self, text: str, vector: list[float]) -> None:
        self._data[self.key_for(text)] = vector
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)

    def keys(self) -> list[tuple[str, int]]:
        return list(self._data.keys())

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class EmbeddingService:
    """
    Ordered chain of embedders behind one interface, with caching.

    Usage::

        service = build_embedding_service(config, network)
        await service.initialize()
        vector = await service.generate_embedding("def parse(): ...")
    """

    def __init__(
        self,
        embedders: list[Embedder],
        network: NetworkStatusOracle,
        config: EmbeddingConfig | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._embedders = [e for e in embedders if not isinstance(e, PseudoEmbedder)]
        self._fallback = PseudoEmbedder(self._config.dimension)
        self._network = network
        self._cache = EmbeddingCache(self._config.cache_size)

    @property
    def dimension(self) -> int:
        return self._config.dimension

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def initialize(self) -> None:
        for embedder in self._embedders:
            try:
                await embedder.initialize()
            except Exception:
                LOG.exception("Failed to initialize %s embedder", embedder.name)
        active = self._select()
        LOG.info("Embedding service ready (primary: %s)", active.name)

    def normalize_text(self, text: str) -> str:
        """Collapse whitespace, trim and cap the length."""
        normalized = _WHITESPACE_RE.sub(" ", text).strip()
        return normalized[: self._config.max_text_chars]

    def requires_network(self) -> bool:
        """False when a local embedder is ready."""
        return not any(e.is_ready() and not e.requires_network for e in self._embedders)

    def _select(self) -> Embedder:
        for embedder in self._embedders:
            if not embedder.is_ready():
                continue
            if embedder.requires_network and not self._network.is_online():
                continue
            return embedder
        return self._fallback

    async def generate_embedding(self, text: str) -> list[float]:
        normalized = self.normalize_text(text)

        if self._config.cache_enabled:
            cached = self._cache.get(normalized)
            if cached is not None:
                return list(cached)

        embedder = self._select()
        try:
            vectors = await asyncio.wait_for(embedder.embed([normalized]), timeout=self._config.request_timeout_s)
            if len(vectors) != 1 or len(vectors[0]) != self.dimension:
                raise EmbeddingUnavailable(f"{embedder.name} returned a vector of the wrong dimension")
            vector = vectors[0]
        except Exception as exc:
            LOG.warning("Embedding via %s failed, using pseudo-embedding: %s", embedder.name, exc)
            return pseudo_embedding(normalized, self.dimension)

        if embedder is self._fallback:
            LOG.debug("Using pseudo-embedding as fallback")
        if self._config.cache_enabled:
            self._cache.put(normalized, vector)
        return list(vector)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        for embedder in self._embedders:
            await embedder.aclose()


def build_embedding_service(
    config: EmbeddingConfig,
    network: NetworkStatusOracle,
) -> EmbeddingService:
    """
    Factory: assemble the default local → remote → pseudo chain from config.
    """
    embedders: list[Embedder] = []
    if config.use_sentence_transformers:
        embedders.append(SentenceTransformerEmbedder(config.local_model, dim=config.dimension))
    if config.use_ollama:
        embedders.append(
            OllamaEmbedder(
                base_url=config.ollama_url,
                model=config.ollama_model,
                dim=config.dimension,
                timeout=config.request_timeout_s,
                probe_timeout=config.probe_timeout_s,
            )
        )
    embedders.append(
        OpenAIEmbedder(
            api_key=config.openai_api_key,
            model=config.openai_model,
            base_url=config.openai_url,
            dim=config.dimension,
            timeout=config.request_timeout_s,
        )
    )
    return EmbeddingService(embedders, network, config)
