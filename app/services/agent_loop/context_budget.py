"""Keeps a growing conversation inside a fixed context budget.

Messages that are individually too large are split into labeled chunks, then
the oldest history entries are evicted until the whole prompt fits the soft
target. Token counts are a character heuristic, not a tokenizer; swap the
estimator to change that without touching the budgeting logic.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage

from .utils import get_message_text

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
SYSTEM_CHUNK_MARGIN = 1000
_CHUNK_LABEL = re.compile(r" \[Chunk \d+\]$")


class TokenEstimator(Protocol):
    """Anything that can estimate the token size of a set of messages."""

    def estimate(self, messages: Sequence[BaseMessage]) -> int:
        ...


class CharacterTokenEstimator:
    """Estimate tokens as ``ceil(total_characters / chars_per_token)``."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.chars_per_token = chars_per_token

    def estimate(self, messages: Sequence[BaseMessage]) -> int:
        total_characters = sum(len(get_message_text(msg)) for msg in messages)
        return math.ceil(total_characters / self.chars_per_token)


def strip_chunk_label(text: str) -> str:
    """Remove the trailing ``[Chunk k]`` label added by :func:`chunk_message`."""
    return _CHUNK_LABEL.sub("", text)


def _split_points(content: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    start = 0
    while start < len(content):
        end = min(start + max_chars, len(content))
        chunk_end = end
        if end < len(content):
            # Prefer the latest natural boundary in the second half of the window.
            window = content[start:end]
            breakpoint_ = max(window.rfind("\n"), window.rfind("."), window.rfind(" "))
            if breakpoint_ >= max_chars * 0.5:
                chunk_end = start + breakpoint_ + 1
        pieces.append(content[start:chunk_end])
        start = chunk_end
    return pieces


def chunk_message(
    message: BaseMessage,
    max_tokens: int,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[BaseMessage]:
    """Split a message whose text exceeds ``max_tokens`` into ordered chunks.

    Every chunk of a split message is suffixed with `` [Chunk k]``; stripping
    the suffixes and concatenating the contents gives back the original text.
    Multi-part content is never split.

    Args:
        message: Message to split
        max_tokens: Maximum estimated tokens per chunk
        chars_per_token: Characters counted as one token

    Returns:
        The chunks in order, or ``[message]`` when no split is needed
    """
    max_chars = max(int(max_tokens * chars_per_token), 1)
    content = message.content
    if not isinstance(content, str) or len(content) <= max_chars:
        return [message]

    pieces = _split_points(content, max_chars)
    if len(pieces) == 1:
        return [message]

    chunks: List[BaseMessage] = []
    for index, piece in enumerate(pieces, 1):
        update = {"content": f"{piece} [Chunk {index}]"}
        if isinstance(message, AIMessage) and index < len(pieces):
            # Tool calls stay on the last chunk so tool results still follow them.
            update["tool_calls"] = []
            update["additional_kwargs"] = {
                key: value for key, value in message.additional_kwargs.items() if key != "tool_calls"
            }
        chunks.append(message.model_copy(update=update))
    return chunks


@dataclass
class BudgetResult:
    """Messages ready to send plus the diagnostics of how they were fitted."""

    messages: List[BaseMessage]
    token_estimate: int
    retained: int
    degraded: bool = False


class ContextBudgeter:
    """Fit a system message and conversation history into a token budget.

    Args:
        soft_target: Token estimate the final prompt should not exceed.
        chunk_tokens: Hard cap for a single message before it is chunked.
        estimator: Token estimator, defaults to the character heuristic.
    """

    def __init__(
        self,
        soft_target: int,
        chunk_tokens: int,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.soft_target = soft_target
        self.chunk_tokens = chunk_tokens
        self.estimator = estimator or CharacterTokenEstimator()

    def chunk_history(self, history: Sequence[BaseMessage]) -> List[BaseMessage]:
        processed: List[BaseMessage] = []
        for msg in history:
            if self.estimator.estimate([msg]) > self.chunk_tokens:
                processed.extend(chunk_message(msg, self.chunk_tokens))
            else:
                processed.append(msg)
        return processed

    def fit(self, system: BaseMessage, history: Sequence[BaseMessage]) -> BudgetResult:
        """Return ``[system] + history`` trimmed to the soft target.

        Oldest history entries are evicted first. If the system message alone
        is still over the target, only the first chunk of it is sent. That is
        a degraded mode: the remaining system instructions are dropped for
        this call and ``BudgetResult.degraded`` is set.
        """
        retained = self.chunk_history(history)
        token_estimate = self.estimator.estimate([system, *retained])

        while token_estimate > self.soft_target and retained:
            retained = retained[1:]
            token_estimate = self.estimator.estimate([system, *retained])

        head = system
        degraded = False
        if token_estimate > self.soft_target and self.estimator.estimate([system]) > self.soft_target:
            head = chunk_message(system, max(self.soft_target - SYSTEM_CHUNK_MARGIN, 1))[0]
            degraded = True
            token_estimate = self.estimator.estimate([head, *retained])
            logger.warning(
                f"System message exceeds the context target ({self.soft_target}); "
                "sending only its first chunk for this call"
            )

        return BudgetResult(
            messages=[head, *retained],
            token_estimate=token_estimate,
            retained=len(retained),
            degraded=degraded,
        )
