"""
Token estimation and greedy budget fitting.

Fitting walks items in relevance order and stops at the first item that
would overflow the budget, even when a smaller later item would still fit.
Only when nothing has been accepted yet is the overflowing item truncated
and included.
"""

from __future__ import annotations

import math

from context_weave.config import AssemblerConfig
from context_weave.models import ContextItem, ContextResult, ItemType

CODE_TRUNCATION_MARKER = "\n// ... content truncated ..."
TEXT_TRUNCATION_MARKER = "... [content truncated] ..."

_CODE_TYPES = frozenset({ItemType.FILE, ItemType.FUNCTION, ItemType.CLASS})


def _has_line_span(item: ContextItem) -> bool:
    return item.line_start is not None and item.line_end is not None


class TokenEstimator:
    """
    Cost model: a fixed per-item overhead plus either a per-line cost (items
    carrying a line span) or a per-character cost.
    """

    def __init__(self, config: AssemblerConfig | None = None) -> None:
        self._config = config or AssemblerConfig()

    @property
    def overhead(self) -> int:
        return self._config.item_overhead_tokens

    def estimate(self, item: ContextItem) -> int:
        count = self._config.item_overhead_tokens
        if item.content:
            if _has_line_span(item):
                count += (item.line_end - item.line_start + 1) * self._config.tokens_per_code_line
            else:
                count += self._chars_cost(len(item.content))
        return count

    def _chars_cost(self, n_chars: int) -> int:
        return math.ceil(n_chars * self._config.tokens_per_char)

    def truncate_to_fit(self, item: ContextItem, max_tokens: int) -> ContextItem:
        """
        Copy of *item* cut down to fit *max_tokens*.

        Code keeps its leading lines followed by a marker line; prose is cut
        at a character offset. The stored item is never touched.
        """
        if not item.content or self.estimate(item) <= max_tokens:
            return item.model_copy()

        budget = max(0, max_tokens - self._config.item_overhead_tokens)

        if item.type not in _CODE_TYPES:
            max_chars = max(0, math.floor(budget / self._config.tokens_per_char) - len(TEXT_TRUNCATION_MARKER))
            return item.model_copy(update={"content": item.content[:max_chars] + TEXT_TRUNCATION_MARKER})

        lines = item.content.split("\n")
        if _has_line_span(item):
            # the marker occupies a line of its own
            keep = max(0, budget // self._config.tokens_per_code_line - 1)
            if keep >= len(lines):
                return item.model_copy(update={"line_end": item.line_start + len(lines) - 1})
            content = "\n".join(lines[:keep]) + CODE_TRUNCATION_MARKER if keep else CODE_TRUNCATION_MARKER.lstrip("\n")
            return item.model_copy(update={"content": content, "line_end": item.line_start + keep})

        keep, used = 0, len(CODE_TRUNCATION_MARKER)
        for line in lines:
            extra = len(line) + (1 if keep else 0)
            if self._chars_cost(used + extra) > budget:
                break
            used += extra
            keep += 1
        content = "\n".join(lines[:keep]) + CODE_TRUNCATION_MARKER if keep else CODE_TRUNCATION_MARKER.lstrip("\n")
        return item.model_copy(update={"content": content})


def fit_to_budget(items: list[ContextItem], max_tokens: int, estimator: TokenEstimator) -> ContextResult:
    """Greedy, relevance-ordered selection of *items* under *max_tokens*."""
    accepted: list[ContextItem] = []
    total = 0
    truncated = False

    for item in items:
        cost = estimator.estimate(item)
        if total + cost > max_tokens:
            truncated = True
            if not accepted:
                clipped = estimator.truncate_to_fit(item, max_tokens)
                accepted.append(clipped)
                total = estimator.estimate(clipped)
            break
        accepted.append(item)
        total += cost

    return ContextResult(items=accepted, token_count=total, truncated=truncated)
