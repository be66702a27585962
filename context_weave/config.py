"""Configuration management for context-weave.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from context_weave.memory.pruning import PruningStrategy

STORAGE_DIR_NAME = ".context_weave"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StorageConfig:
    """Relational store and vector index locations."""

    storage_dir: Path = field(default_factory=lambda: Path.home() / STORAGE_DIR_NAME)
    db_name: str = "context.db"
    vector_dir_name: str = "vectors"
    vector_meta_name: str = "vectors.meta.json"
    collection_name: str = "context_vectors"
    busy_timeout_s: float = 5.0

    @property
    def db_path(self) -> Path:
        return self.storage_dir / self.db_name

    @property
    def vector_dir(self) -> Path:
        return self.storage_dir / self.vector_dir_name

    @property
    def vector_meta_path(self) -> Path:
        return self.storage_dir / self.vector_meta_name

    @classmethod
    def from_env(cls) -> "StorageConfig":
        default_dir = Path.home() / STORAGE_DIR_NAME
        return cls(
            storage_dir=Path(os.getenv("CONTEXT_WEAVE_STORAGE_DIR", str(default_dir))),
            collection_name=os.getenv("CONTEXT_WEAVE_COLLECTION", "context_vectors"),
            busy_timeout_s=float(os.getenv("CONTEXT_WEAVE_DB_TIMEOUT", "5.0")),
        )


@dataclass
class EmbeddingConfig:
    """Embedding provider chain configuration."""

    dimension: int = 384
    local_model: str = "all-MiniLM-L6-v2"
    use_sentence_transformers: bool = True
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "nomic-embed-text"
    use_ollama: bool = True
    openai_api_key: str = ""
    openai_url: str = "https://api.openai.com/v1"
    openai_model: str = "text-embedding-3-small"
    cache_enabled: bool = True
    cache_size: int = 1000
    max_text_chars: int = 32_000
    request_timeout_s: float = 5.0
    probe_timeout_s: float = 2.0

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            dimension=int(os.getenv("EMBEDDING_DIMENSION", "384")),
            local_model=os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            use_sentence_transformers=_env_bool("EMBEDDING_USE_LOCAL_MODEL", True),
            ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
            use_ollama=_env_bool("EMBEDDING_USE_OLLAMA", True),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            cache_enabled=_env_bool("EMBEDDING_CACHE_ENABLED", True),
            cache_size=int(os.getenv("EMBEDDING_CACHE_SIZE", "1000")),
            request_timeout_s=float(os.getenv("EMBEDDING_TIMEOUT", "5.0")),
        )


@dataclass
class NetworkConfig:
    """Connectivity probing for the network-status oracle."""

    endpoint_url: str = "https://www.gstatic.com/generate_204"
    check_interval_s: float = 180.0
    timeout_s: float = 5.0
    reliability_threshold: int = 2
    unreliable_threshold: int = 2

    @classmethod
    def from_env(cls) -> "NetworkConfig":
        return cls(
            endpoint_url=os.getenv("NETWORK_CHECK_URL", "https://www.gstatic.com/generate_204"),
            check_interval_s=float(os.getenv("NETWORK_CHECK_INTERVAL", "180")),
            timeout_s=float(os.getenv("NETWORK_CHECK_TIMEOUT", "5.0")),
        )


@dataclass
class IndexingConfig:
    """Background indexing limits and delays."""

    max_file_size: int = 500 * 1024
    batch_size: int = 3
    batch_delay_s: float = 1.0
    next_batch_delay_s: float = 0.1
    warmup_delay_s: float = 10.0
    max_queue_size: int = 100
    sweep_pause_s: float = 2.0
    max_sweep_files: int = 1000

    @classmethod
    def from_env(cls) -> "IndexingConfig":
        return cls(
            max_file_size=int(os.getenv("INDEX_MAX_FILE_SIZE", str(500 * 1024))),
            batch_size=int(os.getenv("INDEX_CONCURRENCY", "3")),
            batch_delay_s=float(os.getenv("INDEX_BATCH_DELAY", "1.0")),
            warmup_delay_s=float(os.getenv("INDEX_WARMUP_DELAY", "10.0")),
            max_sweep_files=int(os.getenv("INDEX_MAX_FILES", "1000")),
        )


@dataclass
class AssemblerConfig:
    """Token estimation and candidate collection settings."""

    tokens_per_char: float = 0.25
    tokens_per_code_line: int = 5
    item_overhead_tokens: int = 20
    limit_files: int = 5
    workspace_limit: int = 10

    @classmethod
    def from_env(cls) -> "AssemblerConfig":
        return cls(
            limit_files=int(os.getenv("CONTEXT_LIMIT_FILES", "5")),
            workspace_limit=int(os.getenv("CONTEXT_WORKSPACE_LIMIT", "10")),
        )


@dataclass
class MemoryConfig:
    """Conversation memory pruning options."""

    conversation_memory_length: int = 10
    max_tokens_per_item: int = 2000
    importance_threshold: float = 0.5
    pruning_strategy: PruningStrategy = PruningStrategy.HYBRID

    @property
    def keep_count(self) -> int:
        """Non-system messages retained by pruning."""
        return max(1, self.conversation_memory_length * 2)

    @property
    def max_tokens_per_conversation(self) -> int:
        return self.conversation_memory_length * self.max_tokens_per_item

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        return cls(
            conversation_memory_length=int(os.getenv("MEMORY_CONVERSATION_LENGTH", "10")),
            max_tokens_per_item=int(os.getenv("MEMORY_MAX_TOKENS_PER_ITEM", "2000")),
            importance_threshold=float(os.getenv("MEMORY_IMPORTANCE_THRESHOLD", "0.5")),
            pruning_strategy=PruningStrategy(os.getenv("MEMORY_PRUNING_STRATEGY", "hybrid")),
        )


@dataclass
class EngineConfig:
    """Top-level configuration."""

    workspace_root: Path = field(default_factory=Path.cwd)
    storage: StorageConfig = field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            workspace_root=Path(os.getenv("CONTEXT_WEAVE_WORKSPACE", str(Path.cwd()))),
            storage=StorageConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
            network=NetworkConfig.from_env(),
            indexing=IndexingConfig.from_env(),
            assembler=AssemblerConfig.from_env(),
            memory=MemoryConfig.from_env(),
            log_level=os.getenv("CONTEXT_WEAVE_LOG_LEVEL", "INFO"),
        )
