"""Tests for token estimation and greedy budget fitting."""

from __future__ import annotations

from context_weave.config import AssemblerConfig
from context_weave.context.budget import (
    CODE_TRUNCATION_MARKER,
    TEXT_TRUNCATION_MARKER,
    TokenEstimator,
    fit_to_budget,
)
from context_weave.models import ContextItem, ItemType


def _prose(item_id: str, chars: int, relevance: float) -> ContextItem:
    return ContextItem(
        id=item_id,
        type=ItemType.CONVERSATION_HISTORY,
        name=item_id,
        content="x" * chars if chars else None,
        relevance=relevance,
    )


def _code(item_id: str, n_lines: int, relevance: float = 1.0) -> ContextItem:
    return ContextItem(
        id=item_id,
        type=ItemType.FILE,
        name=item_id,
        path=f"/ws/{item_id}",
        content="\n".join(f"line {i}" for i in range(n_lines)),
        line_start=0,
        line_end=n_lines - 1,
        relevance=relevance,
    )


class TestTokenEstimator:
    def test_overhead_only_without_content(self):
        assert TokenEstimator().estimate(_prose("a", 0, 1.0)) == 20

    def test_character_cost(self):
        assert TokenEstimator().estimate(_prose("a", 81, 1.0)) == 20 + 21

    def test_line_cost(self):
        assert TokenEstimator().estimate(_code("a.py", 10)) == 20 + 50

    def test_custom_config(self):
        est = TokenEstimator(AssemblerConfig(item_overhead_tokens=0, tokens_per_code_line=2))
        assert est.estimate(_code("a.py", 4)) == 8


class TestTruncation:
    def test_prose_cut_with_marker(self):
        est = TokenEstimator()
        clipped = est.truncate_to_fit(_prose("a", 320, 1.0), 50)
        assert clipped.content.endswith(TEXT_TRUNCATION_MARKER)
        assert est.estimate(clipped) <= 50

    def test_code_with_span_keeps_leading_lines(self):
        est = TokenEstimator()
        original = _code("a.py", 100)
        clipped = est.truncate_to_fit(original, 100)
        lines = clipped.content.split("\n")
        assert lines[0] == "line 0"
        assert lines[-1] == CODE_TRUNCATION_MARKER.strip("\n")
        assert clipped.line_end == 15
        assert est.estimate(clipped) <= 100
        # the original is untouched
        assert original.line_end == 99

    def test_code_without_span_cut_by_characters(self):
        est = TokenEstimator()
        item = _code("a.py", 200).model_copy(update={"line_start": None, "line_end": None})
        clipped = est.truncate_to_fit(item, 60)
        assert clipped.content.endswith(CODE_TRUNCATION_MARKER)
        assert est.estimate(clipped) <= 60

    def test_fitting_item_returned_as_copy(self):
        item = _prose("a", 10, 1.0)
        clipped = TokenEstimator().truncate_to_fit(item, 1000)
        assert clipped == item
        assert clipped is not item


class TestFitToBudget:
    def test_stops_at_first_overflow(self):
        high = _prose("high", 80, 0.9)  # 40 tokens
        low = _prose("low", 0, 0.85)  # 20 tokens
        result = fit_to_budget([high, low], 50, TokenEstimator())
        assert [i.id for i in result.items] == ["high"]
        assert result.token_count == 40
        assert result.truncated

    def test_no_skipping_to_smaller_items(self):
        items = [_prose("a", 40, 0.9), _prose("b", 400, 0.8), _prose("c", 0, 0.7)]
        result = fit_to_budget(items, 100, TokenEstimator())
        assert [i.id for i in result.items] == ["a"]

    def test_everything_fits(self):
        items = [_prose("a", 40, 0.9), _prose("b", 40, 0.8)]
        result = fit_to_budget(items, 1000, TokenEstimator())
        assert len(result.items) == 2
        assert result.token_count == 60
        assert not result.truncated

    def test_single_oversized_item_truncated_and_included(self):
        result = fit_to_budget([_prose("big", 4000, 1.0)], 50, TokenEstimator())
        assert len(result.items) == 1
        assert result.truncated
        assert result.items[0].content.endswith(TEXT_TRUNCATION_MARKER)
        assert result.token_count <= 50

    def test_token_count_never_exceeds_budget(self):
        est = TokenEstimator()
        for budget in (25, 60, 137, 500):
            result = fit_to_budget([_code("a.py", 300), _prose("b", 100, 0.5)], budget, est)
            assert result.token_count <= budget
            assert result.token_count == sum(est.estimate(i) for i in result.items)

    def test_empty(self):
        result = fit_to_budget([], 100, TokenEstimator())
        assert result.items == []
        assert result.token_count == 0
        assert not result.truncated
