from __future__ import annotations

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from app.services.agent_loop.context_budget import (
    CharacterTokenEstimator,
    ContextBudgeter,
    chunk_message,
    strip_chunk_label,
)


def test_estimator_rounds_characters_up_to_tokens():
    estimator = CharacterTokenEstimator()

    assert estimator.estimate([]) == 0
    assert estimator.estimate([HumanMessage(content="abcde")]) == 2
    assert estimator.estimate([HumanMessage(content="abcd"), HumanMessage(content="abcd")]) == 2


def test_chunking_is_lossless_and_labels_are_sequential():
    text = "The quick brown fox jumps over the lazy dog. " * 40
    chunks = chunk_message(HumanMessage(content=text), max_tokens=25)

    assert len(chunks) > 1
    for index, chunk in enumerate(chunks, 1):
        assert chunk.content.endswith(f" [Chunk {index}]")
        assert isinstance(chunk, HumanMessage)
    assert "".join(strip_chunk_label(chunk.content) for chunk in chunks) == text


def test_chunking_prefers_late_natural_boundaries():
    text = "a" * 70 + " " + "b" * 100
    chunks = chunk_message(HumanMessage(content=text), max_tokens=20)

    assert strip_chunk_label(chunks[0].content) == "a" * 70 + " "


def test_chunking_splits_hard_without_boundary():
    text = "x" * 250
    chunks = chunk_message(HumanMessage(content=text), max_tokens=25)

    assert [len(strip_chunk_label(c.content)) for c in chunks] == [100, 100, 50]


def test_small_and_multipart_messages_are_not_chunked():
    small = HumanMessage(content="short")
    multipart = HumanMessage(content=[{"type": "text", "text": "x" * 1000}])

    assert chunk_message(small, max_tokens=10) == [small]
    assert chunk_message(multipart, max_tokens=10) == [multipart]


def test_tool_calls_stay_on_the_last_chunk():
    message = AIMessage(
        content="y" * 300,
        tool_calls=[{"name": "read_file", "args": {"file_path": "a"}, "id": "call_1"}],
    )
    chunks = chunk_message(message, max_tokens=25)

    assert all(not chunk.tool_calls for chunk in chunks[:-1])
    assert chunks[-1].tool_calls[0]["id"] == "call_1"


def test_fit_evicts_oldest_messages_until_under_target():
    history = [HumanMessage(content=str(i) * 30_000) for i in range(5)]
    budgeter = ContextBudgeter(soft_target=25_000, chunk_tokens=10_000)

    budget = budgeter.fit(SystemMessage(content=""), history)

    assert budget.token_estimate == 22_500
    assert budget.retained == 3
    assert budget.messages[1:] == history[2:]
    assert not budget.degraded


def test_fit_chunks_large_history_messages_before_eviction():
    budgeter = ContextBudgeter(soft_target=100, chunk_tokens=10)
    big = HumanMessage(content="z" * 120)

    budget = budgeter.fit(SystemMessage(content="sys"), [big])

    assert budget.retained == 3
    assert budget.messages[0].content == "sys"
    assert budget.messages[-1].content.endswith("[Chunk 3]")


def test_oversized_system_message_is_cut_to_its_first_chunk():
    budgeter = ContextBudgeter(soft_target=1_500, chunk_tokens=5_000)
    system = SystemMessage(content="s" * 8_000)

    budget = budgeter.fit(system, [HumanMessage(content="hello")])

    assert budget.degraded
    assert budget.retained == 0
    assert len(budget.messages) == 1
    assert budget.messages[0].content == "s" * 2_000 + " [Chunk 1]"
    assert budget.token_estimate <= 1_500
