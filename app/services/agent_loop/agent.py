r"""LangGraph agent loop shared by every agent type.

Flow::

    START -> agent --(should_continue)--> tools ----------> agent
                 |                   \-> format_response -> END (result set)
                 |                   |                  \-> agent (corrective retry)
                 |                   \-> agent (no tool call, no answer)
                 \-> END (iteration budget reached or answer read directly)

The transition logic is identical for all agents. What differs per agent
(prompt, tools, dispatch policy, result schema and how the result is turned
into a return value) is supplied at construction.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage
from langchain_core.tools import BaseTool
from langgraph.graph import END, START, StateGraph
from langgraph.graph.state import CompiledStateGraph
from pydantic import BaseModel

from app.core.config import settings
from .context_budget import ContextBudgeter
from .dispatcher import DispatchPolicy, ToolDispatcher, ToolRegistry
from .errors import MissingResultError
from .formatting import StructuredOutputCoercer
from .rate_limit import TokenBucket, wait_for_tokens
from .state import BUDGET_EXHAUSTED, AgentState, make_state
from .utils import get_message_text, has_structured_marker, last_ai_message

AGENT_NODE = "agent"
TOOLS_NODE = "tools"
FORMAT_NODE = "format_response"

MAX_EMPTY_RESPONSE_ATTEMPTS = 3


def should_continue(state: Dict[str, Any]) -> str:
    """Decide where to go after an ``agent`` step.

    The iteration bound is checked first and wins over everything else.
    """
    if state.get("iterations", 0) >= state.get("max_iterations", 0):
        return END

    if state.get("tool_calls"):
        return TOOLS_NODE

    if state.get("result") is not None:
        return END

    last = last_ai_message(state.get("messages", []))
    if last is not None and has_structured_marker(get_message_text(last)):
        return FORMAT_NODE

    return AGENT_NODE


def after_format(state: Dict[str, Any]) -> str:
    """Finish once a result is stored, otherwise let the agent fix its answer."""
    return END if state.get("result") is not None else AGENT_NODE


def is_empty_response(message: BaseMessage) -> bool:
    return len(message.content or "") == 0 and not getattr(message, "tool_calls", None)


class AgentLoop:
    """Bounded model/tool loop with context budgeting and structured output.

    Args:
        name: Prefix of the thread id (e.g. ``"development-code-writer"``).
        llm: Chat model used for the agent steps.
        system_prompt: Instructions sent as the system message on every call.
        result_schema: Pydantic model the final answer must validate against.
        tools: Tools the model may call, registered once here.
        dispatch_policy: Execute every tool call of a turn or only the first.
        extract: Turns the terminal-result slot into the invocation's return
            value. Receives either a ``result_schema`` instance or
            ``BUDGET_EXHAUSTED``.
        bucket: Shared token bucket pacing every model call.
        budgeter: Context budgeter, defaults to the configured targets.
        format_llm: Model used for the formatting call, defaults to ``llm``.
        max_iterations: Number of ``agent`` steps before the loop gives up.
        logger: Logger instance.
    """

    state_schema: Type[dict] = AgentState

    def __init__(
        self,
        *,
        name: str,
        llm: BaseChatModel,
        system_prompt: str,
        result_schema: Type[BaseModel],
        tools: Iterable[BaseTool] = (),
        dispatch_policy: DispatchPolicy = DispatchPolicy.EXHAUSTIVE,
        extract: Optional[Callable[[Any], Any]] = None,
        bucket: Optional[TokenBucket] = None,
        budgeter: Optional[ContextBudgeter] = None,
        format_llm: Optional[BaseChatModel] = None,
        max_iterations: int = settings.agent_max_iterations,
        token_limit: int = settings.context_token_limit,
        thread_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.thread_id = thread_id or f"{name}-{int(time.time() * 1000)}"
        self.logger = logger or logging.getLogger(__name__)
        self.system_prompt = system_prompt
        self.result_schema = result_schema
        self.extract = extract or (lambda result: result)
        self.bucket = bucket
        self.budgeter = budgeter or ContextBudgeter(
            soft_target=settings.context_soft_target,
            chunk_tokens=settings.message_chunk_tokens,
        )
        self.max_iterations = max_iterations
        self.token_limit = token_limit

        self.registry = ToolRegistry(tools)
        self.dispatcher = ToolDispatcher(self.registry, dispatch_policy, self.logger)
        self.llm = llm.bind_tools(self.registry.tools) if len(self.registry) else llm
        self.coercer = StructuredOutputCoercer(
            format_llm or llm,
            result_schema,
            thread_id=self.thread_id,
            bucket=bucket,
            estimator=self.budgeter.estimator,
            logger=self.logger,
        )
        self.graph = self._build_graph()

    def _build_graph(self) -> CompiledStateGraph:
        """Build the LangGraph agent graph."""
        graph = StateGraph(self.state_schema)

        graph.add_node(AGENT_NODE, self.agent_node)
        graph.add_node(TOOLS_NODE, self.tools_node)
        graph.add_node(FORMAT_NODE, self.format_node)

        graph.add_edge(START, AGENT_NODE)
        graph.add_conditional_edges(
            AGENT_NODE,
            should_continue,
            {
                TOOLS_NODE: TOOLS_NODE,
                FORMAT_NODE: FORMAT_NODE,
                AGENT_NODE: AGENT_NODE,
                END: END,
            },
        )
        graph.add_edge(TOOLS_NODE, AGENT_NODE)
        graph.add_conditional_edges(
            FORMAT_NODE,
            after_format,
            {AGENT_NODE: AGENT_NODE, END: END},
        )
        return graph.compile()

    # ---------------------------- Nodes -----------------------------
    def agent_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        iterations = state.get("iterations", 0)
        max_iterations = state.get("max_iterations", self.max_iterations)

        if iterations >= max_iterations:
            if state.get("result") is None:
                return {"result": BUDGET_EXHAUSTED}
            return {"iterations": iterations}

        prompt = self.build_prompt(state)
        response = self.admit_tool_calls(self.call_model(prompt))
        iterations += 1

        self.logger.info(
            f"[{self.thread_id}] Agent response length: {len(get_message_text(response))} "
            f"(Iteration: {iterations})"
        )

        update: Dict[str, Any] = {
            "messages": [response],
            "iterations": iterations,
            "tool_calls": list(response.tool_calls),
        }
        update.update(self.read_direct_result(state, response))

        if iterations >= max_iterations and update.get("result") is None and state.get("result") is None:
            self.logger.warning(f"[{self.thread_id}] Iteration budget of {max_iterations} exhausted")
            update["result"] = BUDGET_EXHAUSTED
        return update

    def tools_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        tool_calls = state.get("tool_calls") or []
        tool_messages = self.dispatcher.dispatch(tool_calls)
        update = self.absorb_tool_results(state, tool_messages)
        update["tool_calls"] = []
        return update

    def format_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        return self.coercer.coerce(self.build_format_prompt(state))

    # ---------------------------- Hooks -----------------------------
    def build_prompt(self, state: Dict[str, Any]) -> List[BaseMessage]:
        """Messages sent to the model for one ``agent`` step."""
        return self.fit_conversation(state)

    def build_format_prompt(self, state: Dict[str, Any]) -> List[BaseMessage]:
        """Messages the formatting call turns into a structured result."""
        return self.fit_conversation(state)

    def absorb_tool_results(self, state: Dict[str, Any], tool_messages: List[ToolMessage]) -> Dict[str, Any]:
        """Fold dispatched tool results into the state."""
        return {"messages": tool_messages}

    def read_direct_result(self, state: Dict[str, Any], response: AIMessage) -> Dict[str, Any]:
        """Extra state read straight from the model response (none by default)."""
        return {}

    # ---------------------------- Helpers ---------------------------
    def fit_conversation(self, state: Dict[str, Any]) -> List[BaseMessage]:
        system = SystemMessage(content=self.system_prompt)
        budget = self.budgeter.fit(system, state.get("messages", []))
        self.logger.info(
            f"[{self.thread_id}] Final token estimate: {budget.token_estimate}/{self.token_limit} "
            f"({budget.retained} messages retained)"
        )
        return budget.messages

    def call_model(self, prompt: List[BaseMessage]) -> AIMessage:
        """Invoke the model, retrying transient empty completions."""
        response = None
        for attempt in range(1, MAX_EMPTY_RESPONSE_ATTEMPTS + 1):
            if self.bucket is not None:
                wait_for_tokens(self.bucket, self.budgeter.estimator.estimate(prompt), log=self.logger)
            response = self.llm.invoke(prompt, config=self._config())
            if not is_empty_response(response):
                break
            self.logger.warning(
                f"[{self.thread_id}] Empty model response (attempt {attempt}/{MAX_EMPTY_RESPONSE_ATTEMPTS})"
            )
        return response

    def admit_tool_calls(self, response: AIMessage) -> AIMessage:
        """Keep only the tool calls the dispatch policy will execute.

        Every call left on the stored message gets a paired tool result, so
        later prompts replaying the conversation stay valid for the provider.
        """
        admitted = self.dispatcher.admitted(response.tool_calls)
        if len(admitted) == len(response.tool_calls):
            return response
        self.logger.info(
            f"[{self.thread_id}] Dropping {len(response.tool_calls) - len(admitted)} tool call(s) "
            f"not allowed by the {self.dispatcher.policy.value} policy"
        )
        additional_kwargs = {k: v for k, v in response.additional_kwargs.items() if k != "tool_calls"}
        return response.model_copy(update={"tool_calls": admitted, "additional_kwargs": additional_kwargs})

    def _config(self) -> Dict[str, Any]:
        return {"configurable": {"thread_id": self.thread_id}}

    # ---------------------------- Public API ------------------------
    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Drive the graph from ``state`` until it reaches ``END``."""
        max_iterations = state.get("max_iterations", self.max_iterations)
        return self.graph.invoke(
            state,
            config={
                "recursion_limit": max_iterations * 3 + 10,
                "configurable": {"thread_id": self.thread_id},
            },
        )

    def complete(self, messages: List[BaseMessage], **extra: Any) -> Any:
        """Run a fresh invocation and return the extracted result.

        Raises:
            MissingResultError: if the graph ended without a terminal result.
        """
        final_state = self.run(make_state(messages, self.max_iterations, **extra))
        result = final_state.get("result")
        if result is None:
            raise MissingResultError(f"[{self.thread_id}] Agent finished without a result")
        return self.extract(result)
