import asyncio

import pytest
from langchain_core.chat_history import InMemoryChatMessageHistory
from langchain_core.documents import Document
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from convqa.errors import BackendError, ConfigurationError, ValidationError
from convqa.graph import ConversationalRetrievalChain, route_on_documents
from convqa.memory import ConversationMemory
from convqa.models import ChainConfig
from convqa.observability import ChainEvents
from convqa.retrieval import ScoredRetriever
from fakes import FakeIndex, ScriptedLLM, condense_or_answer, match

HISTORY = [
    {"type": "userMessage", "message": "What is X?"},
    {"type": "apiMessage", "message": "X is a columnar database."},
]


def test_scenario_threshold_then_stuff_synthesis(make_chain):
    index = FakeIndex([match("a", 0.9, "X is fast."), match("b", 0.4, "Unrelated.")])
    llm = ScriptedLLM("X is a fast database.")
    chain = make_chain(index, llm, score_threshold=0.5)

    result = chain.invoke("What is X?")

    assert result.answer == "X is a fast database."
    assert [doc.page_content for doc in result.source_documents] == ["X is fast."]
    assert result.used_fallback is False
    # empty history: no condense call, one synthesis call
    (prompt,) = llm.prompts
    assert "X is fast." in prompt and "Unrelated." not in prompt


def test_scenario_follow_up_with_no_evidence_falls_back(make_chain):
    index = FakeIndex([])
    llm = ScriptedLLM(condense_or_answer)
    chain = make_chain(index, llm)

    result = chain.invoke("And how does it compare to Y?", HISTORY)

    assert result.answer == "final answer"
    assert result.source_documents == []
    assert result.used_fallback is True
    assert result.standalone_question == "How does X compare to Y?"
    condense_prompt, fallback_prompt = llm.prompts
    assert "Standalone question:" in condense_prompt
    assert "Question: And how does it compare to Y?" in fallback_prompt
    assert "human: What is X?\nassistant: X is a columnar database." in fallback_prompt
    assert len(index.queries) == 1


def test_retrieval_uses_condensed_question(make_chain, embeddings):
    index = FakeIndex([match("a", 0.9, "Y is slower.")])
    llm = ScriptedLLM(condense_or_answer)
    chain = make_chain(index, llm)

    result = chain.invoke("And how does it compare to Y?", HISTORY)

    assert index.queries[0]["vector"] == embeddings.embed_query("How does X compare to Y?")
    assert "Question: How does X compare to Y?" in llm.prompts[-1]
    assert result.used_fallback is False


def test_source_documents_are_exactly_what_synthesis_received(embeddings):
    seen = []

    class SpySynthesizer:
        async def asynthesize(self, question, documents, history=(), on_token=None):
            seen.append(list(documents))
            return "spy answer"

    index = FakeIndex([match("a", 0.9, "one", source="a.md"), match("b", 0.8, "two", source="b.md")])
    llm = ScriptedLLM()
    base = ConversationalRetrievalChain.from_llm(llm.runnable, ScoredRetriever(index, embeddings))
    chain = ConversationalRetrievalChain(
        condenser=base.condenser,
        retriever=base.retriever,
        synthesizer=SpySynthesizer(),
        fallback=base.fallback,
        config=ChainConfig(return_source_documents=True),
    )

    result = chain.invoke("q")

    assert result.source_documents == seen[0]
    assert [doc.metadata["source"] for doc in result.source_documents] == ["a.md", "b.md"]


def test_source_documents_omitted_unless_requested(make_chain):
    chain = make_chain(FakeIndex([]), ScriptedLLM(), config=ChainConfig())

    result = chain.invoke("hello")

    assert result.source_documents is None
    assert result.as_dict() == {"text": "answer"}


def test_missing_payload_keys_fail_before_any_backend_call(make_chain):
    index = FakeIndex([match("a", 0.9, "doc")])
    llm = ScriptedLLM()
    chain = make_chain(index, llm)

    with pytest.raises(ValidationError, match="Chat history key chat_history"):
        asyncio.run(chain.acall({"question": "q"}))
    with pytest.raises(ValidationError, match="Question key question"):
        asyncio.run(chain.acall({"chat_history": []}))
    assert index.queries == [] and llm.prompts == []


def test_conflicting_filters_abort_the_call(make_chain):
    index = FakeIndex([match("a", 0.9, "doc")])
    chain = make_chain(index, ScriptedLLM(), default_filter={"lang": "en"})

    with pytest.raises(ConfigurationError):
        chain.invoke("q", filter={"lang": "de"})
    assert index.queries == []


def test_memory_is_written_after_success_and_read_next_turn(make_chain):
    llm = ScriptedLLM(condense_or_answer)
    chain = make_chain(FakeIndex([]), llm)

    async def two_turns():
        await chain.ainvoke("What is X?", session_id="s")
        await chain.ainvoke("And Y?", session_id="s")
        return await chain.memory.aload("s")

    history = asyncio.run(two_turns())

    assert [m.content for m in history] == ["What is X?", "final answer", "And Y?", "final answer"]
    # the second turn had history, so it was condensed
    assert any("Standalone question:" in prompt for prompt in llm.prompts)


def test_failure_leaves_memory_untouched(make_chain):
    chain = make_chain(FakeIndex(error=ConnectionError("index down")), ScriptedLLM())

    with pytest.raises(BackendError):
        chain.invoke("q", session_id="s")

    assert asyncio.run(chain.memory.aload("s")) == []


def test_external_history_replaces_buffer_each_call(make_chain):
    llm = ScriptedLLM(condense_or_answer)
    chain = make_chain(FakeIndex([]), llm)

    chain.invoke("first", HISTORY, session_id="s")
    chain.invoke("second", HISTORY[:1], session_id="s")

    history = asyncio.run(chain.memory.aload("s"))
    assert [m.content for m in history] == ["What is X?", "second", "final answer"]


def test_long_term_memory_is_not_overwritten_by_external_history(make_chain):
    store = InMemoryChatMessageHistory()
    memory = ConversationMemory(lambda session_id: store)
    chain = make_chain(FakeIndex([]), ScriptedLLM(condense_or_answer), memory=memory)

    chain.invoke("hello", HISTORY, session_id="s")

    assert [m.content for m in store.messages] == ["hello", "final answer"]


def test_same_session_calls_are_serialized(make_chain):
    llm = ScriptedLLM(condense_or_answer, delay=0.02)
    chain = make_chain(FakeIndex([]), llm)

    async def concurrent():
        await asyncio.gather(
            chain.ainvoke("one", session_id="s"),
            chain.ainvoke("two", session_id="s"),
        )
        return await chain.memory.aload("s")

    history = asyncio.run(concurrent())

    assert [m.content for m in history][0::2] in (["one", "two"], ["two", "one"])
    assert llm.max_in_flight == 1


def test_different_sessions_run_in_parallel(make_chain):
    llm = ScriptedLLM("ok", delay=0.05)
    chain = make_chain(FakeIndex([]), llm)

    async def concurrent():
        await asyncio.gather(chain.ainvoke("one", session_id="a"), chain.ainvoke("two", session_id="b"))

    asyncio.run(concurrent())

    assert llm.max_in_flight == 2


def test_cancellation_discards_the_turn(make_chain):
    llm = ScriptedLLM("slow", delay=10)
    chain = make_chain(FakeIndex([]), llm)

    async def cancel_midway():
        task = asyncio.create_task(chain.ainvoke("q", session_id="s"))
        while not llm.prompts:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await chain.memory.aload("s")

    assert asyncio.run(cancel_midway()) == []


def test_tokens_stream_while_full_answer_is_returned(embeddings):
    tokens = []
    retriever = ScoredRetriever(FakeIndex([match("a", 0.9, "Paris is the capital.")]), embeddings)
    chain = ConversationalRetrievalChain.from_llm(FakeListChatModel(responses=["Paris"]), retriever)

    result = asyncio.run(chain.ainvoke("Capital of France?", on_token=tokens.append))

    assert result.answer == "Paris"
    assert "".join(tokens) == "Paris"


def test_events_are_emitted(make_chain):
    class RecordingEvents(ChainEvents):
        def __init__(self):
            self.calls = []

        def retrieved(self, question, count):
            self.calls.append(("retrieved", count))

        def answered(self, path, latency_ms):
            self.calls.append(("answered", path))

    events = RecordingEvents()
    chain = make_chain(FakeIndex([]), ScriptedLLM())
    chain.events = events

    chain.invoke("q")

    assert events.calls == [("retrieved", 0), ("answered", "fallback")]


def test_route_on_documents():
    assert route_on_documents({"documents": []}) == "fallback"
    assert route_on_documents({"documents": [Document(page_content="x")]}) == "synthesize"


def test_session_locks_are_released_after_each_call(make_chain):
    chain = make_chain(FakeIndex([]), ScriptedLLM())

    async def many_sessions():
        for number in range(50):
            await chain.ainvoke("q", session_id=f"session-{number}")

    asyncio.run(many_sessions())

    assert len(chain.locks) == 0


def test_session_lock_survives_while_a_call_waits(make_chain):
    llm = ScriptedLLM("ok", delay=0.02)
    chain = make_chain(FakeIndex([]), llm)

    async def queued():
        first = asyncio.create_task(chain.ainvoke("one", session_id="s"))
        second = asyncio.create_task(chain.ainvoke("two", session_id="s"))
        while not llm.prompts:
            await asyncio.sleep(0.005)
        held = len(chain.locks)
        await asyncio.gather(first, second)
        return held

    assert asyncio.run(queued()) == 1
    assert len(chain.locks) == 0
    assert llm.max_in_flight == 1


def test_sync_invoke_inside_event_loop_raises(make_chain):
    chain = make_chain(FakeIndex([]), ScriptedLLM())

    async def call_sync():
        chain.invoke("q")

    with pytest.raises(RuntimeError, match="running event loop"):
        asyncio.run(call_sync())
