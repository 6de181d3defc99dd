from __future__ import annotations

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.tools import StructuredTool
from langgraph.graph import END
from pydantic import BaseModel, Field

from app.services.agent_loop.agent import (
    AGENT_NODE,
    FORMAT_NODE,
    TOOLS_NODE,
    AgentLoop,
    after_format,
    should_continue,
)
from app.services.agent_loop.dispatcher import DispatchPolicy
from app.services.agent_loop.errors import MissingResultError
from app.services.agent_loop.rate_limit import TokenBucket
from app.services.agent_loop.state import BUDGET_EXHAUSTED, is_exhausted

from fakes import ScriptedChatModel, structured, tool_call


class _Success(BaseModel):
    success: bool


class _NoteInput(BaseModel):
    note: str = Field(description="Note to record")


def _note_tool(notes):
    def record(note: str) -> str:
        notes.append(note)
        return f"recorded {note}"

    return StructuredTool.from_function(func=record, name="record", description="Record a note", args_schema=_NoteInput)


def _loop(llm, notes=None, **kwargs):
    return AgentLoop(
        name="test-agent",
        llm=llm,
        system_prompt="You are a test agent.",
        result_schema=_Success,
        tools=[_note_tool(notes if notes is not None else [])],
        **kwargs,
    )


# ---------------------------- Predicate ----------------------------
def test_bound_wins_over_pending_tool_calls():
    state = {
        "iterations": 25,
        "max_iterations": 25,
        "tool_calls": [tool_call("record", {"note": "x"})],
        "result": BUDGET_EXHAUSTED,
        "messages": [],
    }
    assert should_continue(state) == END
    assert is_exhausted(state["result"])


@pytest.mark.parametrize(
    "state, expected",
    [
        ({"tool_calls": [tool_call("record")]}, TOOLS_NODE),
        ({"result": _Success(success=True)}, END),
        ({"messages": [AIMessage(content='Done: {"success": true}')]}, FORMAT_NODE),
        ({"messages": [AIMessage(content="```json\n[]\n```")]}, FORMAT_NODE),
        ({"messages": [AIMessage(content="still thinking")]}, AGENT_NODE),
    ],
)
def test_should_continue_routes(state, expected):
    state = {"iterations": 1, "max_iterations": 5, "messages": [], **state}
    assert should_continue(state) == expected


def test_after_format_retries_until_a_result_exists():
    assert after_format({"result": None}) == AGENT_NODE
    assert after_format({"result": _Success(success=True)}) == END


# ---------------------------- Runs ---------------------------------
def test_tool_call_at_the_bound_never_reaches_tools():
    notes = []
    llm = ScriptedChatModel([AIMessage(content="", tool_calls=[tool_call("record", {"note": "x"})])])

    loop = _loop(llm, notes, max_iterations=1)
    result = loop.complete([HumanMessage(content="go")])

    assert result is BUDGET_EXHAUSTED
    assert notes == []
    assert len(llm.calls) == 1


def test_budget_runs_out_without_an_answer():
    llm = ScriptedChatModel([AIMessage(content="still thinking")])

    final = _loop(llm, max_iterations=3).run(
        {"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 3, "result": None, "tool_calls": []}
    )

    assert final["iterations"] == 3
    assert final["result"] is BUDGET_EXHAUSTED
    assert len(llm.calls) == 3


def test_tool_round_trip_then_formatted_result():
    notes = []
    llm = ScriptedChatModel(
        [
            AIMessage(content="", tool_calls=[tool_call("record", {"note": "hello"}, "call_7")]),
            AIMessage(content='{"success": true}'),
        ],
        structured=[structured(parsed={"success": True})],
    )

    loop = _loop(llm, notes)
    final = loop.run({"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 25, "result": None, "tool_calls": []})

    assert notes == ["hello"]
    assert final["result"] == _Success(success=True)
    assert final["iterations"] == 2
    tool_messages = [m for m in final["messages"] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["call_7"]
    assert tool_messages[0].content == "recorded hello"
    assert [t.name for t in llm.bound_tools] == ["record"]
    assert llm.configs[0] == {"configurable": {"thread_id": loop.thread_id}}


def test_invalid_format_goes_back_to_the_agent():
    llm = ScriptedChatModel(
        [AIMessage(content="{success: maybe}"), AIMessage(content='{"success": false}')],
        structured=[structured(parsed=None, raw="{success: maybe}"), structured(parsed={"success": False})],
    )

    final = _loop(llm).run({"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 25, "result": None, "tool_calls": []})

    assert final["result"] == _Success(success=False)
    # one agent step per formatting attempt
    assert final["iterations"] == 2
    second_prompt = llm.calls[1]
    assert second_prompt[-1].content.startswith("The response format is invalid.")


def test_empty_responses_are_retried_within_one_iteration():
    llm = ScriptedChatModel(
        [AIMessage(content=""), AIMessage(content=""), AIMessage(content='{"success": true}')],
        structured=[structured(parsed={"success": True})],
    )

    final = _loop(llm).run({"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 25, "result": None, "tool_calls": []})

    assert len(llm.calls) == 3
    assert final["iterations"] == 1
    assert final["result"].success is True


def test_empty_response_retries_stop_after_three_attempts():
    llm = ScriptedChatModel([AIMessage(content="")])

    final = _loop(llm, max_iterations=1).run(
        {"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 1, "result": None, "tool_calls": []}
    )

    assert len(llm.calls) == 3
    assert final["result"] is BUDGET_EXHAUSTED


def test_every_model_call_draws_from_the_bucket():
    bucket = TokenBucket(capacity=10_000, refill_rate=0.001)
    llm = ScriptedChatModel([AIMessage(content='{"success": true}')], structured=[structured(parsed={"success": True})])

    _loop(llm, bucket=bucket).complete([HumanMessage(content="x" * 4_000)])

    # one agent call and one format call, each over 1000 estimated tokens
    assert bucket.available < 10_000 - 2_000


def test_prompt_starts_with_the_system_message():
    llm = ScriptedChatModel([AIMessage(content='{"success": true}')], structured=[structured(parsed={"success": True})])

    _loop(llm).complete([HumanMessage(content="go")])

    assert llm.calls[0][0].content == "You are a test agent."
    assert llm.calls[0][1].content == "go"


def test_extract_maps_the_terminal_result():
    llm = ScriptedChatModel([AIMessage(content='{"success": true}')], structured=[structured(parsed={"success": True})])

    assert _loop(llm, extract=lambda r: r.success).complete([HumanMessage(content="go")]) is True


def test_missing_result_raises(monkeypatch):
    loop = _loop(ScriptedChatModel([AIMessage(content="x")]))
    monkeypatch.setattr(loop, "run", lambda state: {"messages": [], "result": None})

    with pytest.raises(MissingResultError):
        loop.complete([HumanMessage(content="go")])


def test_first_only_keeps_just_the_executed_call_on_the_reply():
    notes = []
    llm = ScriptedChatModel(
        [
            AIMessage(
                content="",
                tool_calls=[tool_call("record", {"note": "a"}, "c1"), tool_call("record", {"note": "b"}, "c2")],
                additional_kwargs={"tool_calls": [{"id": "c1"}, {"id": "c2"}]},
            ),
            AIMessage(content='{"success": true}'),
        ],
        structured=[structured(parsed={"success": True})],
    )

    final = _loop(llm, notes, dispatch_policy=DispatchPolicy.FIRST_ONLY).run(
        {"messages": [HumanMessage(content="go")], "iterations": 0, "max_iterations": 25, "result": None, "tool_calls": []}
    )

    assert notes == ["a"]
    called = [c["id"] for m in final["messages"] if isinstance(m, AIMessage) for c in m.tool_calls]
    answered = [m.tool_call_id for m in final["messages"] if isinstance(m, ToolMessage)]
    assert called == answered == ["c1"]
    reply = next(m for m in final["messages"] if isinstance(m, AIMessage) and m.tool_calls)
    assert "tool_calls" not in reply.additional_kwargs

    format_prompt = llm.structured_calls[0]
    assert [c["id"] for m in format_prompt if isinstance(m, AIMessage) for c in m.tool_calls] == ["c1"]
