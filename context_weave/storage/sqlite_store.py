"""
SQLite-backed context store.

Durable tables for conversations and messages, indexed context items, code
entities and usage patterns, paired with a vector index whose integer ids
are mirrored in the ``vector_id`` columns. Uses WAL mode and a busy timeout.

Every public method returns a success flag, an object or ``None``, or an
empty list; storage errors are logged here and never raised to callers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from context_weave.config import StorageConfig
from context_weave.models import (
    CodeEntity,
    ContextItem,
    Conversation,
    ConversationMessage,
    EntityMeta,
    FileMeta,
    ItemType,
    ProjectMeta,
    UserPattern,
    VectorEntry,
    VectorMeta,
    now_ms,
    parse_meta,
)
from context_weave.rag.vector_store import VectorStore

LOG = logging.getLogger("storage.sqlite_store")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    model_id TEXT NOT NULL,
    system_prompt TEXT,
    temperature REAL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    importance REAL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

-- Files, project info and other retrievable snippets
CREATE TABLE IF NOT EXISTS context_items (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT,
    language TEXT,
    content TEXT,
    line_start INTEGER,
    line_end INTEGER,
    size INTEGER,
    last_accessed INTEGER,
    importance_score REAL DEFAULT 0,
    vector_id TEXT,
    metadata TEXT
);

-- Extracted functions and classes
CREATE TABLE IF NOT EXISTS code_entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    file_path TEXT,
    code TEXT,
    first_seen INTEGER,
    last_seen INTEGER,
    frequency INTEGER DEFAULT 1,
    vector_id TEXT
);

CREATE TABLE IF NOT EXISTS user_patterns (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    pattern TEXT NOT NULL,
    examples TEXT,
    frequency INTEGER DEFAULT 1,
    first_seen INTEGER,
    last_seen INTEGER
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_code_entities_name ON code_entities(name);
CREATE INDEX IF NOT EXISTS idx_context_items_path ON context_items(path);
"""


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime:
    return datetime.fromtimestamp((value or 0) / 1000, tz=timezone.utc)


def _like(pattern: str) -> str:
    return pattern if "%" in pattern else f"%{pattern}%"


def _migrate(conn: sqlite3.Connection) -> None:
    """Bring databases created before the messages.importance column up to date."""
    columns = {row[1] for row in conn.execute("PRAGMA table_info(messages)")}
    if "importance" not in columns:
        conn.execute("ALTER TABLE messages ADD COLUMN importance REAL")
        LOG.info("Added importance column to messages")


class ContextStore:
    """
    Relational store plus vector index.

    Construct, then call :meth:`initialize`. Until it succeeds every
    operation degrades to its empty result.
    """

    def __init__(self, config: StorageConfig, vector_store: VectorStore | None = None) -> None:
        self._config = config
        self._vectors = vector_store
        self._conn: sqlite3.Connection | None = None

    # ── lifecycle ───────────────────────────────────────────────────────

    def initialize(self) -> bool:
        db_path = Path(self._config.db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(db_path), timeout=self._config.busy_timeout_s)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.executescript(_SCHEMA_SQL)
            _migrate(conn)
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            LOG.error("Failed to initialize SQLite database at %s: %s", db_path, exc)
            return False
        self._conn = conn
        LOG.info("Context store ready at %s", db_path)
        return True

    @property
    def is_ready(self) -> bool:
        return self._conn is not None

    @property
    def vectors_ready(self) -> bool:
        return self._vectors is not None

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                LOG.warning("Error closing database: %s", exc)
            self._conn = None
        if self._vectors is not None:
            self._vectors.close()
            self._vectors = None

    def _db(self) -> sqlite3.Connection | None:
        if self._conn is None:
            LOG.warning("SQLite database not ready")
        return self._conn

    # ── context items ───────────────────────────────────────────────────

    def save_context_item(self, item: ContextItem) -> bool:
        conn = self._db()
        if conn is None:
            return False
        metadata = json.dumps(item.metadata.model_dump(mode="json")) if item.metadata is not None else None
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO context_items
                        (id, type, name, path, language, content, line_start, line_end,
                         size, last_accessed, importance_score, vector_id, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        type = excluded.type,
                        name = excluded.name,
                        path = excluded.path,
                        language = excluded.language,
                        content = excluded.content,
                        line_start = excluded.line_start,
                        line_end = excluded.line_end,
                        size = excluded.size,
                        last_accessed = excluded.last_accessed,
                        importance_score = excluded.importance_score,
                        vector_id = COALESCE(excluded.vector_id, context_items.vector_id),
                        metadata = excluded.metadata
                    """,
                    (
                        item.id,
                        str(item.type),
                        item.name,
                        item.path,
                        item.language,
                        item.content,
                        item.line_start,
                        item.line_end,
                        item.size,
                        item.last_accessed if item.last_accessed is not None else now_ms(),
                        item.importance_score,
                        item.vector_id,
                        metadata,
                    ),
                )
        except sqlite3.Error as exc:
            LOG.error("Failed to save context item %s: %s", item.id, exc)
            return False
        return True

    def get_context_item(self, item_id: str) -> ContextItem | None:
        conn = self._db()
        if conn is None:
            return None
        try:
            row = conn.execute("SELECT * FROM context_items WHERE id = ?", (item_id,)).fetchone()
        except sqlite3.Error as exc:
            LOG.error("Failed to load context item %s: %s", item_id, exc)
            return None
        return self._row_to_item(row) if row is not None else None

    def find_context_items(
        self,
        path_pattern: str,
        limit: int = 10,
        item_type: ItemType | None = None,
    ) -> list[ContextItem]:
        conn = self._db()
        if conn is None:
            return []
        sql = "SELECT * FROM context_items WHERE path LIKE ?"
        params: list[Any] = [_like(path_pattern)]
        if item_type is not None:
            sql += " AND type = ?"
            params.append(str(item_type))
        sql += " ORDER BY last_accessed DESC LIMIT ?"
        params.append(limit)
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            LOG.error("Failed to find context items: %s", exc)
            return []
        return [self._row_to_item(r) for r in rows]

    def indexed_file_paths(self) -> set[str]:
        conn = self._db()
        if conn is None:
            return set()
        try:
            rows = conn.execute(
                "SELECT path FROM context_items WHERE type = ? AND path IS NOT NULL",
                (str(ItemType.FILE),),
            ).fetchall()
        except sqlite3.Error as exc:
            LOG.error("Failed to list indexed files: %s", exc)
            return set()
        return {r["path"] for r in rows}

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ContextItem:
        metadata = None
        if row["metadata"]:
            try:
                metadata = parse_meta(json.loads(row["metadata"]))
            except (json.JSONDecodeError, ValidationError):
                LOG.debug("Ignoring malformed metadata on item %s", row["id"])
        return ContextItem(
            id=row["id"],
            type=ItemType(row["type"]),
            name=row["name"],
            path=row["path"],
            language=row["language"],
            content=row["content"],
            line_start=row["line_start"],
            line_end=row["line_end"],
            size=row["size"],
            last_accessed=row["last_accessed"],
            importance_score=row["importance_score"] or 0.0,
            vector_id=row["vector_id"],
            metadata=metadata,
        )

    # ── code entities ───────────────────────────────────────────────────

    def save_code_entity(self, entity: CodeEntity) -> bool:
        """Insert *entity*, or bump frequency and stamp ``last_seen`` if known."""
        conn = self._db()
        if conn is None:
            return False
        try:
            with conn:
                existing = conn.execute("SELECT id FROM code_entities WHERE id = ?", (entity.id,)).fetchone()
                if existing is not None:
                    conn.execute(
                        """
                        UPDATE code_entities
                        SET code = ?, last_seen = ?, frequency = frequency + 1
                        WHERE id = ?
                        """,
                        (entity.code, now_ms(), entity.id),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO code_entities
                            (id, name, type, file_path, code, first_seen, last_seen, frequency, vector_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entity.id,
                            entity.name,
                            str(entity.type),
                            entity.file_path,
                            entity.code,
                            entity.first_seen,
                            entity.last_seen,
                            entity.frequency,
                            entity.vector_id,
                        ),
                    )
        except sqlite3.Error as exc:
            LOG.error("Failed to save code entity %s: %s", entity.id, exc)
            return False
        return True

    def get_code_entity(self, entity_id: str) -> CodeEntity | None:
        conn = self._db()
        if conn is None:
            return None
        try:
            row = conn.execute("SELECT * FROM code_entities WHERE id = ?", (entity_id,)).fetchone()
        except sqlite3.Error as exc:
            LOG.error("Failed to load code entity %s: %s", entity_id, exc)
            return None
        return self._row_to_entity(row) if row is not None else None

    def find_code_entities(self, name_pattern: str, limit: int = 10) -> list[CodeEntity]:
        conn = self._db()
        if conn is None:
            return []
        try:
            rows = conn.execute(
                """
                SELECT * FROM code_entities
                WHERE name LIKE ?
                ORDER BY frequency DESC, last_seen DESC
                LIMIT ?
                """,
                (_like(name_pattern), limit),
            ).fetchall()
        except sqlite3.Error as exc:
            LOG.error("Failed to find code entities: %s", exc)
            return []
        return [self._row_to_entity(r) for r in rows]

    def entities_for_file(self, file_path: str) -> list[CodeEntity]:
        conn = self._db()
        if conn is None:
            return []
        try:
            rows = conn.execute(
                "SELECT * FROM code_entities WHERE file_path = ? ORDER BY first_seen",
                (file_path,),
            ).fetchall()
        except sqlite3.Error as exc:
            LOG.error("Failed to load entities for %s: %s", file_path, exc)
            return []
        return [self._row_to_entity(r) for r in rows]

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> CodeEntity:
        return CodeEntity(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            file_path=row["file_path"] or "",
            code=row["code"] or "",
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            frequency=row["frequency"] or 1,
            vector_id=row["vector_id"],
        )

    def delete_file(self, path: str) -> bool:
        """Remove the file's item, its entities, and their vectors."""
        conn = self._db()
        if conn is None:
            return False
        try:
            with conn:
                vector_ids = [
                    r["vector_id"]
                    for r in conn.execute(
                        """
                        SELECT vector_id FROM context_items WHERE path = ? AND vector_id IS NOT NULL
                        UNION
                        SELECT vector_id FROM code_entities WHERE file_path = ? AND vector_id IS NOT NULL
                        """,
                        (path, path),
                    ).fetchall()
                ]
                conn.execute("DELETE FROM code_entities WHERE file_path = ?", (path,))
                conn.execute("DELETE FROM context_items WHERE path = ? AND type = ?", (path, str(ItemType.FILE)))
        except sqlite3.Error as exc:
            LOG.error("Failed to delete %s: %s", path, exc)
            return False

        if vector_ids and self._vectors is not None:
            try:
                self._vectors.delete([int(v) for v in vector_ids])
            except Exception:
                LOG.exception("Failed to delete vectors for %s", path)
                return False
        LOG.debug("Removed %s (%d vectors)", path, len(vector_ids))
        return True

    # ── conversations ───────────────────────────────────────────────────

    def save_conversation(self, conversation: Conversation) -> bool:
        """Upsert the conversation and replace its message rows."""
        conn = self._db()
        if conn is None:
            return False
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO conversations
                        (id, title, created_at, updated_at, model_id, system_prompt, temperature)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        updated_at = excluded.updated_at,
                        model_id = excluded.model_id,
                        system_prompt = excluded.system_prompt,
                        temperature = excluded.temperature
                    """,
                    (
                        conversation.id,
                        conversation.title,
                        _to_ms(conversation.created_at),
                        _to_ms(conversation.updated_at),
                        conversation.model_id,
                        conversation.system_prompt,
                        conversation.temperature,
                    ),
                )
                conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation.id,))
                conn.executemany(
                    """
                    INSERT INTO messages (id, conversation_id, role, content, timestamp, importance)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (m.id, conversation.id, str(m.role), m.content, _to_ms(m.timestamp), m.importance)
                        for m in conversation.messages
                    ],
                )
        except sqlite3.Error as exc:
            LOG.error("Failed to save conversation %s: %s", conversation.id, exc)
            return False
        return True

    def load_conversations(self, limit: int | None = None) -> list[Conversation]:
        """All conversations, most recently updated first."""
        conn = self._db()
        if conn is None:
            return []
        sql = "SELECT * FROM conversations ORDER BY updated_at DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._hydrate_conversation(conn, r) for r in rows]
        except sqlite3.Error as exc:
            LOG.error("Failed to load conversations: %s", exc)
            return []

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        conn = self._db()
        if conn is None:
            return None
        try:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
            if row is None:
                return None
            return self._hydrate_conversation(conn, row)
        except sqlite3.Error as exc:
            LOG.error("Failed to load conversation %s: %s", conversation_id, exc)
            return None

    @staticmethod
    def _hydrate_conversation(conn: sqlite3.Connection, row: sqlite3.Row) -> Conversation:
        messages = [
            ConversationMessage(
                id=m["id"],
                role=m["role"],
                content=m["content"],
                timestamp=_from_ms(m["timestamp"]),
                importance=m["importance"],
            )
            for m in conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY rowid",
                (row["id"],),
            ).fetchall()
        ]
        return Conversation(
            id=row["id"],
            title=row["title"],
            messages=messages,
            model_id=row["model_id"],
            system_prompt=row["system_prompt"],
            temperature=row["temperature"] if row["temperature"] is not None else 0.7,
            created_at=_from_ms(row["created_at"]),
            updated_at=_from_ms(row["updated_at"]),
        )

    # ── usage patterns ──────────────────────────────────────────────────

    def save_user_pattern(self, pattern: UserPattern) -> bool:
        """Insert *pattern*, or bump frequency and merge examples if known."""
        conn = self._db()
        if conn is None:
            return False
        stamp = now_ms()
        try:
            with conn:
                row = conn.execute("SELECT examples FROM user_patterns WHERE id = ?", (pattern.id,)).fetchone()
                if row is not None:
                    examples = json.loads(row["examples"] or "[]")
                    examples.extend(e for e in pattern.examples if e not in examples)
                    conn.execute(
                        """
                        UPDATE user_patterns
                        SET examples = ?, frequency = frequency + 1, last_seen = ?
                        WHERE id = ?
                        """,
                        (json.dumps(examples), stamp, pattern.id),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO user_patterns (id, type, pattern, examples, frequency, first_seen, last_seen)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            pattern.id,
                            pattern.type,
                            pattern.pattern,
                            json.dumps(pattern.examples),
                            pattern.frequency,
                            pattern.first_seen or stamp,
                            pattern.last_seen or stamp,
                        ),
                    )
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            LOG.error("Failed to save usage pattern %s: %s", pattern.id, exc)
            return False
        return True

    def find_user_patterns(self, limit: int = 10) -> list[UserPattern]:
        conn = self._db()
        if conn is None:
            return []
        try:
            rows = conn.execute(
                "SELECT * FROM user_patterns ORDER BY frequency DESC, last_seen DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [
                UserPattern(
                    id=r["id"],
                    type=r["type"],
                    pattern=r["pattern"],
                    examples=json.loads(r["examples"] or "[]"),
                    frequency=r["frequency"] or 1,
                    first_seen=r["first_seen"],
                    last_seen=r["last_seen"],
                )
                for r in rows
            ]
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            LOG.error("Failed to load usage patterns: %s", exc)
            return []

    # ── vectors ─────────────────────────────────────────────────────────

    def save_vector(self, vector_id: int, vector: list[float], metadata: VectorMeta) -> bool:
        """Upsert *vector* under *vector_id* and link the id to its owning row."""
        conn = self._db()
        if conn is None or self._vectors is None:
            LOG.warning("Vector index not ready")
            return False
        try:
            self._vectors.upsert(vector_id, vector, metadata.model_dump(mode="json"))
        except Exception:
            LOG.exception("Failed to save vector %d", vector_id)
            return False

        if isinstance(metadata, FileMeta):
            sql, key = "UPDATE context_items SET vector_id = ? WHERE id = ?", metadata.item_id
        elif isinstance(metadata, EntityMeta):
            sql, key = "UPDATE code_entities SET vector_id = ? WHERE id = ?", metadata.entity_id
        elif isinstance(metadata, ProjectMeta):
            sql, key = "UPDATE context_items SET vector_id = ? WHERE type = ?", str(ItemType.PROJECT_INFO)
        else:
            raise TypeError(f"Unknown vector metadata: {type(metadata).__name__}")
        try:
            with conn:
                conn.execute(sql, (str(vector_id), key))
        except sqlite3.Error as exc:
            LOG.error("Failed to link vector %d: %s", vector_id, exc)
            return False
        return True

    def vector_ids(self) -> list[int]:
        if self._vectors is None:
            return []
        try:
            return self._vectors.ids()
        except Exception:
            LOG.exception("Failed to list vector ids")
            return []

    def find_similar_vectors(self, query: list[float], limit: int = 10) -> list[VectorEntry]:
        """Nearest neighbours of *query*, each hydrated from the item and entity tables."""
        conn = self._db()
        if conn is None or self._vectors is None:
            return []
        try:
            hits = self._vectors.search(query, top_k=limit)
        except Exception:
            LOG.exception("Vector search failed")
            return []

        results: list[VectorEntry] = []
        for hit in hits:
            try:
                meta = parse_meta(hit.metadata)
            except ValidationError:
                meta = None
            try:
                item_row = conn.execute(
                    "SELECT * FROM context_items WHERE vector_id = ?", (str(hit.id),)
                ).fetchone()
                entity_row = conn.execute(
                    "SELECT * FROM code_entities WHERE vector_id = ?", (str(hit.id),)
                ).fetchone()
            except sqlite3.Error as exc:
                LOG.error("Failed to hydrate vector %d: %s", hit.id, exc)
                continue
            results.append(
                VectorEntry(
                    id=hit.id,
                    vector=hit.vector,
                    score=hit.score,
                    metadata=meta,
                    item=self._row_to_item(item_row) if item_row is not None else None,
                    entity=self._row_to_entity(entity_row) if entity_row is not None else None,
                )
            )
        return results
