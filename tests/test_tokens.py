"""Tests for token estimation and per-run token budgets."""

import pytest

from flowengine.errors import ResourceExhaustedError, TokenLimitExceededError
from flowengine.llm.tokens import (
    TokenBudget,
    count_chat_tokens,
    count_message_tokens,
    estimate_tokens,
)
from flowengine.runtime.retry import is_retryable_error


class TestEstimates:
    @pytest.mark.parametrize(
        "text,expected",
        [("", 0), ("abc", 1), ("abcd", 1), ("abcde", 2), ("x" * 400, 100), (None, 0), (42, 0)],
    )
    def test_four_chars_per_token(self, text, expected):
        assert estimate_tokens(text) == expected

    def test_messages_carry_overhead(self):
        messages = [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "x" * 40},
            {"role": "assistant", "content": None},
        ]
        assert count_message_tokens(messages) == 3 + 3 + 10 + 3 + 0 + 3

    def test_chat_counts_completion_budget(self):
        count = count_chat_tokens([{"role": "user", "content": "x" * 40}], max_tokens=2000)
        assert (count.input, count.output, count.total) == (13, 2000, 2013)


class TestTokenBudget:
    def test_defaults(self):
        budget = TokenBudget()
        assert (budget.max_per_node, budget.max_per_run) == (50_000, 200_000)
        assert budget.used == 0

    def test_node_limit(self):
        budget = TokenBudget(max_per_node=100)
        budget.charge("a", 100)
        with pytest.raises(TokenLimitExceededError, match="node 'b'"):
            budget.charge("b", 101)
        assert budget.used == 100

    def test_run_limit_spans_nodes(self):
        budget = TokenBudget(max_per_node=100, max_per_run=150)
        budget.charge("a", 100)
        with pytest.raises(TokenLimitExceededError, match="150 tokens per run, but 160"):
            budget.charge("b", 60)
        budget.charge("b", 50)
        assert budget.used == 150

    def test_retry_replaces_reservation(self):
        budget = TokenBudget(max_per_node=100, max_per_run=150)
        budget.charge("a", 100)
        budget.charge("a", 100)
        assert budget.used == 100

    def test_limit_errors_are_terminal(self):
        error = TokenLimitExceededError("too many tokens")
        assert isinstance(error, ResourceExhaustedError)
        assert error.kind == "resource"
        assert not is_retryable_error(error)
