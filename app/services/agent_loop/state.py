"""State definition for the LangGraph agent loop.

Every field declares its merge rule next to its type, so a node only returns
the fields it changes and LangGraph folds them into the running state.
"""

from __future__ import annotations

from typing import Annotated, Any, List, Optional, TypedDict

from langchain_core.messages import BaseMessage
from langchain_core.messages.tool import ToolCall

EXHAUSTED_MESSAGE = "Maximum iterations reached. Unable to complete task."


class ExhaustedResult:
    """Sentinel stored in the result slot when the iteration budget runs out."""

    _instance: Optional["ExhaustedResult"] = None

    def __new__(cls) -> "ExhaustedResult":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    message = EXHAUSTED_MESSAGE

    def __repr__(self) -> str:
        return "BUDGET_EXHAUSTED"


BUDGET_EXHAUSTED = ExhaustedResult()


def is_exhausted(value: Any) -> bool:
    return value is BUDGET_EXHAUSTED


def append_messages(current: List[BaseMessage], update: Optional[List[BaseMessage]]) -> List[BaseMessage]:
    """Merge rule for the conversation: new messages are appended."""
    if not update:
        return current
    return current + list(update)


def last_write(current: Any, update: Any) -> Any:
    """Merge rule for scalar fields: the latest non-``None`` write wins."""
    return current if update is None else update


class AgentState(TypedDict, total=False):
    """State shared by every node of an agent loop."""

    messages: Annotated[List[BaseMessage], append_messages]
    iterations: Annotated[int, last_write]
    max_iterations: Annotated[int, last_write]
    result: Annotated[Any, last_write]  # validated result model or BUDGET_EXHAUSTED
    tool_calls: Annotated[List[ToolCall], last_write]


class VoyagerState(AgentState, total=False):
    """Agent state plus the browsing scratchpad used by the research voyager."""

    question: Annotated[str, last_write]
    thought: Annotated[Optional[str], last_write]
    scratchpad: Annotated[List[str], last_write]


def make_state(messages: List[BaseMessage], max_iterations: int, **extra: Any) -> dict:
    """Initialise a fresh state dict with sensible defaults."""
    state = {
        "messages": list(messages),
        "iterations": 0,
        "max_iterations": max_iterations,
        "result": None,
        "tool_calls": [],
    }
    state.update(extra)
    return state
