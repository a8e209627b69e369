"""
Token estimation and per-run token budgets for provider calls.

Counts are a heuristic (about four characters per token, plus a small
per-message overhead for chat), good enough to stop runaway prompts
before they reach the provider. They are not billing figures.

A chat call is charged for its input plus its max_tokens setting, since
that is what the provider may generate.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from flowengine.config import DEFAULT_MAX_TOKENS_PER_NODE, DEFAULT_MAX_TOKENS_PER_RUN
from flowengine.errors import TokenLimitExceededError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 3


def estimate_tokens(text: Any) -> int:
    """Approximate token count of a string; 0 for anything else."""
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_message_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    """Token estimate for an OpenAI-style messages array."""
    total = 0
    for message in messages:
        total += estimate_tokens(message.get("content")) + MESSAGE_OVERHEAD_TOKENS
    return total


@dataclass(frozen=True)
class TokenCount:
    input: int
    output: int

    @property
    def total(self) -> int:
        return self.input + self.output


def count_chat_tokens(messages: Iterable[Mapping[str, Any]], max_tokens: int) -> TokenCount:
    return TokenCount(input=count_message_tokens(messages), output=max_tokens)


class TokenBudget:
    """
    Token allowance for one run.

    Each node holds one reservation; a retry replaces its node's earlier
    reservation instead of adding to it.

    Example:
        budget = TokenBudget(max_per_node=50_000, max_per_run=200_000)
        budget.charge("chat", count_chat_tokens(messages, 2000).total)
    """

    def __init__(
        self,
        max_per_node: int = DEFAULT_MAX_TOKENS_PER_NODE,
        max_per_run: int = DEFAULT_MAX_TOKENS_PER_RUN,
    ):
        self.max_per_node = max_per_node
        self.max_per_run = max_per_run
        self._charged: dict[str, int] = {}

    @property
    def used(self) -> int:
        return sum(self._charged.values())

    def charge(self, node_id: str, tokens: int) -> None:
        """
        Reserve tokens for a node's provider call.

        Raises:
            TokenLimitExceededError: The node or the run would go over its limit
        """
        if tokens > self.max_per_node:
            raise TokenLimitExceededError(
                f"Token limit exceeded for node '{node_id}': maximum {self.max_per_node:,} "
                f"tokens per node, but {tokens:,} would be used. "
                "Reduce the input size or the max_tokens setting."
            )
        projected = self.used - self._charged.get(node_id, 0) + tokens
        if projected > self.max_per_run:
            raise TokenLimitExceededError(
                f"Run token limit exceeded: maximum {self.max_per_run:,} tokens per run, "
                f"but {projected:,} would be used. Reduce the number of AI nodes or their token usage."
            )
        self._charged[node_id] = tokens
        logger.debug("Node %s reserved %d tokens (%d used in run)", node_id, tokens, projected)
