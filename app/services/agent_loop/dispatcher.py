"""Resolve and execute model-requested tool calls."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

from langchain_core.messages import ToolMessage
from langchain_core.messages.tool import ToolCall
from langchain_core.tools import BaseTool

from .errors import ToolRegistryError
from .utils import stringify_tool_result, truncate


class DispatchPolicy(str, Enum):
    """How many of the tool calls in one assistant turn get executed."""

    EXHAUSTIVE = "exhaustive"
    FIRST_ONLY = "first_only"


class ToolRegistry:
    """Tools available to one agent, keyed by name.

    Registered once at agent construction; names must be unique.
    """

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: Dict[str, BaseTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ToolRegistryError(f"Duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    @property
    def tools(self) -> List[BaseTool]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


class ToolDispatcher:
    """Execute tool calls sequentially and capture their results as tool messages.

    Failures never propagate: a tool that raises (including argument
    validation errors) produces a tool message describing the error.
    Calls naming a tool that is not registered are skipped without a
    message. That leaves the call unpaired in the conversation, which
    providers that enforce call/result pairing may reject.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: DispatchPolicy = DispatchPolicy.EXHAUSTIVE,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.logger = logger or logging.getLogger(__name__)

    def admitted(self, tool_calls: Iterable[ToolCall]) -> List[ToolCall]:
        """The calls the policy lets through, in order."""
        calls = list(tool_calls)
        if self.policy is DispatchPolicy.FIRST_ONLY:
            return calls[:1]
        return calls

    def dispatch(self, tool_calls: Iterable[ToolCall]) -> List[ToolMessage]:
        """Run the calls allowed by the policy, in order, one at a time."""
        messages: List[ToolMessage] = []
        for call in self.admitted(tool_calls):
            message = self.execute(call)
            if message is not None:
                messages.append(message)
        return messages

    def execute(self, call: ToolCall) -> Optional[ToolMessage]:
        name = call.get("name", "")
        tool = self.registry.get(name)
        if tool is None:
            self.logger.warning(f"Skipping call to unknown tool {name!r} (id={call.get('id')})")
            return None

        try:
            result = tool.invoke(call.get("args") or {})
            content = stringify_tool_result(result)
            self.logger.info(f"Tool {name} executed successfully with result: {truncate(content)}")
        except Exception as exc:
            self.logger.error(f"Error executing tool {name}: {exc}")
            content = f"Error executing {name}: {exc}"

        return ToolMessage(content=content, tool_call_id=call.get("id") or "", name=name)
