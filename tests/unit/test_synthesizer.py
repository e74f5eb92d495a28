"""Tests for answer synthesis and streamed citation enforcement."""

import pytest

from grounded_chat.config.constants import CITATION_INTEGRITY_REJECTION, EMPTY_ANSWER, NO_EVIDENCE_ANSWER
from grounded_chat.generation.citations import CitationEnumeration
from grounded_chat.generation.stream_events import ReasoningFragment
from grounded_chat.generation.synthesizer import (
    AnswerSynthesizer,
    CitationGuard,
    ReasoningAssembler,
    build_answer_prompt,
)

from conftest import FakeLLM

CONTEXT = "[1] Cities glow.\n\n[2] Rural areas stay dark.\n\nReferences:\n[1] Doc a\n[2] Doc b"


@pytest.fixture
def enumeration(make_reference):
    return CitationEnumeration.build([make_reference("a"), make_reference("b")], [])


def _delta(text):
    return {"type": "response.output_text.delta", "delta": text}


class Collector:
    def __init__(self):
        self.items = []

    def __call__(self, text):
        self.items.append(text)


def test_guard_holds_text_until_window_fills(enumeration):
    guard = CitationGuard(enumeration, min_chars=20)
    assert guard.feed("Short [1] ") == ("", [])
    released, unknown = guard.feed("and then a bit more text")
    assert released == "Short [1] and then a bit more text"
    assert unknown == []


def test_guard_keeps_split_marker_buffered(enumeration):
    guard = CitationGuard(enumeration, min_chars=10)
    assert guard.feed("Lights are bright [") == ("Lights are bright ", [])
    released, unknown = guard.feed("9] beyond the evidence")
    assert released == ""
    assert unknown == [9]


def test_guard_finish_checks_remainder(enumeration):
    guard = CitationGuard(enumeration, min_chars=100)
    guard.feed("Tail [2]")
    assert guard.finish() == ("Tail [2]", [])
    guard.feed("Bad [3]")
    assert guard.finish() == ("", [3])


def test_reasoning_assembler_joins_and_dedupes():
    assembler = ReasoningAssembler()
    key = ("r1", 0, 0, 0)
    assert assembler.add(ReasoningFragment(key, "Checking ", False)) is None
    assert assembler.add(ReasoningFragment(key, "sources", False)) is None
    assert assembler.add(ReasoningFragment(key, "", True)) == "Checking sources"
    assert assembler.add_complete("  checking   SOURCES ") is None
    assembler.add(ReasoningFragment(("r2", 0, 0, 0), "Dangling", False))
    assert assembler.flush() == ["Dangling"]
    assert assembler.snippets == ["Checking sources", "Dangling"]


def test_build_answer_prompt_appends_synthesis_and_revision():
    prompt = build_answer_prompt("Q?", CONTEXT, ["Cite the rural claim"], "Compare both")
    assert "Synthesis instructions:\nCompare both" in prompt
    assert "Cite the rural claim" in prompt


@pytest.mark.asyncio
async def test_no_evidence_short_circuits(enumeration):
    llm = FakeLLM()
    tokens = Collector()
    result = await AnswerSynthesizer(llm).synthesize("Q?", "", enumeration, stream=True, on_token=tokens)
    assert result.answer == NO_EVIDENCE_ANSWER
    assert tokens.items == [NO_EVIDENCE_ANSWER]
    assert llm.calls["stream"] == 0


@pytest.mark.asyncio
async def test_sync_answer_accepted(enumeration):
    llm = FakeLLM(texts=["  Cities glow [1] while rural areas stay dark [2].  "])
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, prompt_hint="Be brief.")
    assert result.answer == "Cities glow [1] while rural areas stay dark [2]."
    assert result.rejected is False


@pytest.mark.asyncio
async def test_sync_unknown_citation_rejected(enumeration):
    llm = FakeLLM(texts=["Claim [5]."])
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration)
    assert result.answer == CITATION_INTEGRITY_REJECTION
    assert result.rejected is True
    assert result.unknown_citations == [5]


@pytest.mark.asyncio
async def test_sync_generation_failure_returns_empty_answer(enumeration):
    result = await AnswerSynthesizer(FakeLLM()).synthesize("Q?", CONTEXT, enumeration)
    assert result.answer == EMPTY_ANSWER
    assert result.error == "no scripted text"


@pytest.mark.asyncio
async def test_stream_releases_tokens_and_reasoning(enumeration):
    llm = FakeLLM(
        streams=[
            [
                {"type": "response.created", "response": {"id": "resp_1"}},
                {"type": "response.reasoning_summary_text.delta", "item_id": "r1", "delta": "Weighing "},
                {"type": "response.reasoning_summary_text.delta", "item_id": "r1", "delta": "evidence"},
                {"type": "response.reasoning_summary_text.done", "item_id": "r1", "text": ""},
                _delta("Cities glow brightly at night across the whole world [1]. "),
                _delta("Rural areas stay dark [2]."),
                {"type": "response.output_text.done", "text": "ignored because deltas arrived"},
                {"type": "response.completed", "response": {"id": "resp_1", "output_text": "ignored"}},
            ]
        ]
    )
    tokens, reasoning = Collector(), Collector()
    result = await AnswerSynthesizer(llm).synthesize(
        "Q?", CONTEXT, enumeration, stream=True, previous_response_id="prev_0", on_token=tokens, on_reasoning=reasoning
    )
    assert result.answer == "Cities glow brightly at night across the whole world [1]. Rural areas stay dark [2]."
    assert "".join(tokens.items) == result.answer
    assert reasoning.items == ["Weighing evidence"]
    assert result.response_id == "resp_1"
    assert llm.stream_kwargs[0]["previous_response_id"] == "prev_0"


@pytest.mark.asyncio
async def test_stream_rejects_unknown_citation_and_cancels(enumeration):
    llm = FakeLLM(
        streams=[
            [
                _delta("Cities glow brightly at night across the whole world [1]. "),
                _delta("Rural regions stay dark according to [9] and other sources we cite."),
                _delta("This text must never be read."),
            ]
        ]
    )
    tokens = Collector()
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, stream=True, on_token=tokens)
    assert result.answer == CITATION_INTEGRITY_REJECTION
    assert result.rejected is True
    assert result.unknown_citations == [9]
    assert tokens.items == ["Cities glow brightly at night across the whole world [1]. "]
    assert not any("[9]" in t for t in tokens.items)
    reader = llm.readers[0]
    assert reader.cancelled is True
    assert reader.closed is True
    assert reader.consumed == 2


@pytest.mark.asyncio
async def test_stream_completed_payload_used_without_deltas(enumeration):
    llm = FakeLLM(
        streams=[[{"type": "response.completed", "response": {"id": "r9", "output_text": "Only final text [2]."}}]]
    )
    tokens = Collector()
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, stream=True, on_token=tokens)
    assert result.answer == "Only final text [2]."
    assert tokens.items == ["Only final text [2]."]
    assert result.response_id == "r9"


@pytest.mark.asyncio
async def test_stream_failure_event_records_error(enumeration):
    llm = FakeLLM(streams=[[_delta("Partial"), {"type": "error", "error": {"message": "overloaded"}}]])
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, stream=True)
    assert result.error == "overloaded"
    assert result.answer == "Partial"


@pytest.mark.asyncio
async def test_stream_open_failure(enumeration):
    result = await AnswerSynthesizer(FakeLLM()).synthesize("Q?", CONTEXT, enumeration, stream=True)
    assert result.answer == EMPTY_ANSWER
    assert result.streamed is True


@pytest.mark.asyncio
async def test_stream_rejected_at_finish_releases_reader(enumeration):
    llm = FakeLLM(streams=[[_delta("Dark skies [7].")]])
    tokens = Collector()
    result = await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, stream=True, on_token=tokens)
    assert result.rejected is True
    assert result.unknown_citations == [7]
    assert tokens.items == []
    reader = llm.readers[0]
    assert reader.cancelled is True
    assert reader.closed is True


def test_build_answer_prompt_includes_conversation_context():
    prompt = build_answer_prompt("Q?", CONTEXT, conversation_context="Summary:\n- User lives in Oslo")
    assert "Conversation context (not citable):\nSummary:\n- User lives in Oslo" in prompt
    assert "Conversation context" not in build_answer_prompt("Q?", CONTEXT, conversation_context="  ")


@pytest.mark.asyncio
async def test_conversation_context_reaches_answer_prompt(enumeration):
    llm = FakeLLM(texts=["Cities glow [1]."])
    await AnswerSynthesizer(llm).synthesize("Q?", CONTEXT, enumeration, conversation_context="[Memory] prefers metric")
    assert "[Memory] prefers metric" in llm.prompts[-1]
