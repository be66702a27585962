"""
Conversation memory.

Owns conversations: appends messages, prunes on every write according to the
configured strategy, and renders conversation context for a query.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import uuid
from datetime import datetime, timezone

from context_weave.config import MemoryConfig
from context_weave.errors import ContextEngineError
from context_weave.memory.pruning import (
    TOKENS_PER_CHAR,
    message_importance,
    prune_messages,
    should_prune,
)
from context_weave.models import Conversation, ConversationMessage, Role
from context_weave.rag.embedding_provider import EmbeddingService
from context_weave.rag.similarity import cosine_similarity
from context_weave.storage.sqlite_store import ContextStore

LOG = logging.getLogger("memory.manager")

TRUNCATION_NOTE = "[...conversation truncated for brevity...]\n\n"


def generate_title(content: str) -> str:
    """First line of *content*, shortened to at most 50 characters."""
    first_line = content.split("\n")[0].strip()
    if len(first_line) <= 50:
        return first_line
    return first_line[:47] + "..."


class MemoryManager:
    """
    Conversation persistence with pruning applied on write.

    Usage::

        memory = MemoryManager(store, embeddings, MemoryConfig())
        msg_id = await memory.add_message("conv-1", Role.USER, "How do I parse this?")
        text = await memory.get_conversation_context("conv-1", "parse", max_tokens=500)
    """

    def __init__(
        self,
        store: ContextStore,
        embeddings: EmbeddingService,
        config: MemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._config = config or MemoryConfig()
        self._lock = asyncio.Lock()

    @property
    def options(self) -> MemoryConfig:
        return self._config

    def set_options(self, **changes) -> MemoryConfig:
        """Replace individual memory options, e.g. ``set_options(pruning_strategy="lru")``."""
        self._config = dataclasses.replace(self._config, **changes)
        return self._config

    async def add_message(self, conversation_id: str, role: Role | str, content: str) -> str:
        """Append a message, pruning the conversation if it grew too large; returns the message id."""
        message = ConversationMessage(
            id=str(uuid.uuid4()),
            role=Role(role),
            content=content,
            importance=message_importance(content) if content.strip() else None,
        )

        async with self._lock:
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                conversation = Conversation(id=conversation_id, title=generate_title(content))
            else:
                conversation.updated_at = datetime.now(timezone.utc)

            conversation.messages.append(message)

            cfg = self._config
            if should_prune(conversation.messages, cfg.keep_count, cfg.max_tokens_per_conversation):
                conversation.messages = prune_messages(
                    conversation.messages,
                    cfg.pruning_strategy,
                    cfg.keep_count,
                    cfg.importance_threshold,
                )

            if not self._store.save_conversation(conversation):
                LOG.error("Failed to persist message %s in conversation %s", message.id, conversation_id)

        return message.id

    async def update_message_importance(self, conversation_id: str, message_id: str, importance: float) -> bool:
        """Override a message's importance (clamped to [0, 1]) for later pruning."""
        async with self._lock:
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                return False
            for message in conversation.messages:
                if message.id == message_id:
                    message.importance = max(0.0, min(1.0, importance))
                    return self._store.save_conversation(conversation)
        return False

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._store.load_conversation(conversation_id)
        if conversation is None:
            return None
        # rows written before scoring carry no importance
        for message in conversation.messages:
            if message.importance is None and message.content.strip():
                message.importance = message_importance(message.content)
        return conversation

    async def get_recent_conversations(self, limit: int = 10) -> list[Conversation]:
        return self._store.load_conversations(limit=limit)

    async def get_conversation_context(self, conversation_id: str, query: str = "", max_tokens: int = 2000) -> str:
        """
        Render the conversation as ``role: content`` blocks within *max_tokens*.

        With a query, messages are ordered by similarity to it.
        """
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return ""

        messages = list(conversation.messages)
        if query.strip():
            query_vector = await self._embeddings.generate_embedding(query)
            for message in messages:
                try:
                    vector = await self._embeddings.generate_embedding(message.content)
                    message.relevance = cosine_similarity(query_vector, vector)
                except (ValueError, ContextEngineError) as exc:
                    LOG.warning("Scoring message %s failed: %s", message.id, exc)
                    message.relevance = 0.0
            messages.sort(key=lambda m: -(m.relevance or 0.0))

        parts: list[str] = []
        used = 0
        for message in messages:
            block = f"{message.role}: {message.content}\n\n"
            cost = math.ceil(len(block) * TOKENS_PER_CHAR)
            if used + cost > max_tokens:
                parts.append(TRUNCATION_NOTE)
                break
            parts.append(block)
            used += cost
        return "".join(parts)
