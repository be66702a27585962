"""
Conversation pruning strategies and message importance scoring.

Every strategy keeps all system messages and returns the retained
non-system messages in their original order. Ties are broken by original
position so the same input always prunes the same way.
"""

from __future__ import annotations

import logging
import math
import re
from enum import StrEnum
from typing import Sequence

from context_weave.models import ConversationMessage, Role

LOG = logging.getLogger("memory.pruning")

TOKENS_PER_CHAR = 0.25

_URL_RE = re.compile(r"https?://[^\s]+")
_FILE_PATH_RE = re.compile(r"[\w/.\-]+\.(ts|js|py|java|html|css|json)")
_KEYWORD_RE = re.compile(r"function|class|interface|import|export|const|let|var")


class PruningStrategy(StrEnum):
    LRU = "lru"
    IMPORTANCE = "importance"
    HYBRID = "hybrid"


def message_importance(content: str) -> float:
    """Heuristic importance of a message in [0, 1]."""
    score = 0.5
    if "```" in content:
        score += 0.2
    if _URL_RE.search(content) or _FILE_PATH_RE.search(content) or _KEYWORD_RE.search(content):
        score += 0.1
    if len(content) > 500:
        score += 0.1
    elif len(content) < 50:
        score -= 0.1
    if "?" in content:
        score += 0.1
    return max(0.0, min(1.0, score))


def estimate_message_tokens(messages: Sequence[ConversationMessage]) -> int:
    return sum(math.ceil(len(m.content) * TOKENS_PER_CHAR) for m in messages)


def should_prune(
    messages: Sequence[ConversationMessage],
    max_messages: int,
    max_tokens: int,
) -> bool:
    if len(messages) > max_messages:
        return True
    return estimate_message_tokens(messages) > max_tokens


def _importance(message: ConversationMessage) -> float:
    if message.importance is None:
        return 0.5
    return message.importance


def _split(
    messages: Sequence[ConversationMessage],
) -> tuple[list[ConversationMessage], list[tuple[int, ConversationMessage]]]:
    system = [m for m in messages if m.role == Role.SYSTEM]
    others = [(i, m) for i, m in enumerate(messages) if m.role != Role.SYSTEM]
    return system, others


def _in_original_order(
    messages: Sequence[ConversationMessage],
    keep_ids: set[str],
) -> list[ConversationMessage]:
    return [m for m in messages if m.role == Role.SYSTEM or m.id in keep_ids]


def prune_lru(messages: Sequence[ConversationMessage], keep_count: int) -> list[ConversationMessage]:
    """Keep system messages plus the most recent *keep_count* others."""
    _, others = _split(messages)
    keep = others[-keep_count:] if keep_count > 0 else []
    return _in_original_order(messages, {m.id for _, m in keep})


def prune_importance(
    messages: Sequence[ConversationMessage],
    keep_count: int,
    threshold: float,
) -> list[ConversationMessage]:
    """Keep everything at/above *threshold*, then fill free slots by importance."""
    _, others = _split(messages)
    ranked = sorted(others, key=lambda pair: (-_importance(pair[1]), pair[0]))

    above = [m for _, m in ranked if _importance(m) >= threshold]
    below = [m for _, m in ranked if _importance(m) < threshold]
    remaining = max(0, keep_count - len(above))

    keep_ids = {m.id for m in above} | {m.id for m in below[:remaining]}
    return _in_original_order(messages, keep_ids)


def prune_hybrid(messages: Sequence[ConversationMessage], keep_count: int) -> list[ConversationMessage]:
    """
    Half the slots by recency, half by importance.

    When the union still exceeds *keep_count*, each candidate gets a combined
    score (mean of normalized recency and importance) and the top
    *keep_count* survive.
    """
    _, others = _split(messages)
    half = math.ceil(keep_count / 2)
    recent = sorted(others, key=lambda pair: -pair[0])[:half]
    important = sorted(others, key=lambda pair: (-_importance(pair[1]), pair[0]))[:half]

    chosen: dict[str, tuple[int, ConversationMessage]] = {}
    for pos, msg in recent + important:
        chosen.setdefault(msg.id, (pos, msg))

    candidates = sorted(chosen.values(), key=lambda pair: pair[0])
    if len(candidates) > keep_count:
        first = others[0][0]
        span = (others[-1][0] - first) or 1
        for pos, msg in candidates:
            recency = (pos - first) / span
            msg.combined_score = (recency + _importance(msg)) / 2
        candidates = sorted(candidates, key=lambda pair: (-(pair[1].combined_score or 0.0), -pair[0]))
        candidates = candidates[:keep_count]

    return _in_original_order(messages, {m.id for _, m in candidates})


def prune_messages(
    messages: Sequence[ConversationMessage],
    strategy: PruningStrategy,
    keep_count: int,
    importance_threshold: float = 0.5,
) -> list[ConversationMessage]:
    """Dispatch to the configured strategy."""
    if strategy == PruningStrategy.LRU:
        pruned = prune_lru(messages, keep_count)
    elif strategy == PruningStrategy.IMPORTANCE:
        pruned = prune_importance(messages, keep_count, importance_threshold)
    else:
        pruned = prune_hybrid(messages, keep_count)

    LOG.debug("Pruned conversation (%s): %d -> %d messages", strategy, len(messages), len(pruned))
    return pruned
