"""Tests for conversation pruning strategies and importance scoring."""

from __future__ import annotations

import pytest

from context_weave.memory.pruning import (
    PruningStrategy,
    estimate_message_tokens,
    message_importance,
    prune_hybrid,
    prune_importance,
    prune_lru,
    prune_messages,
    should_prune,
)
from context_weave.models import ConversationMessage, Role


def _msgs(n: int, importances=None, with_system: bool = True) -> list[ConversationMessage]:
    out = []
    if with_system:
        out.append(ConversationMessage(id="sys", role=Role.SYSTEM, content="system prompt"))
    for i in range(n):
        out.append(
            ConversationMessage(
                id=f"m{i}",
                role=Role.USER if i % 2 == 0 else Role.ASSISTANT,
                content=f"message {i}",
                importance=importances[i] if importances else 0.5,
            )
        )
    return out


class TestMessageImportance:
    def test_short_plain_message(self):
        assert message_importance("ok") == pytest.approx(0.4)

    def test_code_block(self):
        assert message_importance("```x = 1```") == pytest.approx(0.6)

    def test_long_question_with_path(self):
        content = "Why does src/app/main.py fail? " + "detail " * 100
        # base + path + long + question
        assert message_importance(content) == pytest.approx(0.8)

    def test_clamped(self):
        content = "```\nimport os\n```\n" + "https://example.com " * 40 + "?"
        assert message_importance(content) <= 1.0


class TestShouldPrune:
    def test_count_trigger(self):
        assert should_prune(_msgs(5, with_system=False), max_messages=4, max_tokens=10_000)
        assert not should_prune(_msgs(4, with_system=False), max_messages=4, max_tokens=10_000)

    def test_token_trigger(self):
        msgs = [ConversationMessage(id="a", role=Role.USER, content="x" * 400)]
        assert estimate_message_tokens(msgs) == 100
        assert should_prune(msgs, max_messages=10, max_tokens=99)


class TestStrategies:
    def test_lru_keeps_most_recent_and_system(self):
        pruned = prune_lru(_msgs(5), keep_count=2)
        assert [m.id for m in pruned] == ["sys", "m3", "m4"]

    def test_lru_zero_keeps_only_system(self):
        assert [m.id for m in prune_lru(_msgs(3), 0)] == ["sys"]

    def test_importance_keeps_all_above_threshold(self):
        pruned = prune_importance(_msgs(4, [0.9, 0.8, 0.7, 0.2]), keep_count=2, threshold=0.5)
        assert [m.id for m in pruned] == ["sys", "m0", "m1", "m2"]

    def test_importance_fills_free_slots(self):
        pruned = prune_importance(_msgs(4, [0.1, 0.9, 0.3, 0.2]), keep_count=3, threshold=0.5)
        assert [m.id for m in pruned] == ["sys", "m1", "m2", "m3"]

    def test_hybrid_noop_when_small(self):
        msgs = _msgs(3)
        assert prune_hybrid(msgs, keep_count=5) == msgs

    def test_hybrid_prunes_below_keep_count(self):
        # token-budget triggers can prune before the count limit is reached
        msgs = _msgs(15, [0.1] * 5 + [0.9] * 10)
        pruned = prune_hybrid(msgs, keep_count=20)
        assert [m.id for m in pruned] == ["sys"] + [f"m{i}" for i in range(5, 15)]

    def test_hybrid_odd_keep_count_uses_combined_score(self):
        importances = [0.9, 0.8, 0.7] + [0.1] * 7
        first = prune_hybrid(_msgs(10, importances), keep_count=5)
        second = prune_hybrid(_msgs(10, importances), keep_count=5)

        # recent half m7-m9 and important half m0-m2 are disjoint; m7 scores lowest
        assert [m.id for m in first] == ["sys", "m0", "m1", "m2", "m8", "m9"]
        assert [m.id for m in second] == [m.id for m in first]
        scores = {m.id: m.combined_score for m in first if m.role != Role.SYSTEM}
        assert scores["m9"] == pytest.approx(0.55)
        assert scores["m0"] == pytest.approx(0.45)

    def test_hybrid_bounded_and_ordered(self):
        importances = [0.1 * (i % 10) for i in range(30)]
        msgs = _msgs(30, importances)
        pruned = prune_hybrid(msgs, keep_count=10)
        non_system = [m for m in pruned if m.role != Role.SYSTEM]
        assert pruned[0].id == "sys"
        assert len(non_system) <= 10
        positions = [int(m.id[1:]) for m in non_system]
        assert positions == sorted(positions)
        # the newest message always survives
        assert non_system[-1].id == "m29"

    def test_hybrid_deterministic(self):
        importances = [0.5] * 25
        a = [m.id for m in prune_hybrid(_msgs(25, importances), keep_count=8)]
        b = [m.id for m in prune_hybrid(_msgs(25, importances), keep_count=8)]
        assert a == b

    @pytest.mark.parametrize("strategy", list(PruningStrategy))
    def test_every_strategy_keeps_system(self, strategy):
        pruned = prune_messages(_msgs(12), strategy, keep_count=4, importance_threshold=0.9)
        assert pruned[0].role == Role.SYSTEM
        assert len([m for m in pruned if m.role != Role.SYSTEM]) <= 4
