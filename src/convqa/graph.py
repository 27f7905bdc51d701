"""LangGraph definition for conversational retrieval QA.

condense -> retrieve -> (synthesize | fallback) -> END

The graph itself is stateless; the only state that outlives a call is the
conversation memory, which is written once the graph has finished.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from functools import lru_cache
from time import perf_counter
from typing import Any, Literal, TypedDict

from langchain_core.documents import Document
from langchain_core.messages import BaseMessage
from langchain_core.runnables import Runnable, RunnableConfig
from langgraph.graph import END, START, StateGraph

from .condenser import QuestionCondenser
from .config import AppSettings, get_settings
from .embeddings import build_embeddings
from .errors import ChainError, ValidationError
from .fallback import FallbackConversational
from .llm import TokenCallback, build_chat_model, run_sync
from .memory import ConversationMemory, build_long_term_memory, resolve_memory
from .models import ChainConfig, Message, OrchestrationResult, to_chat_history
from .observability import ChainEvents, LoggingChainEvents, traced_span
from .retrieval import ScoredRetriever, build_pinecone_index
from .synthesis import AnswerSynthesizer, build_synthesizer

DEFAULT_SESSION = "default"


class ChainState(TypedDict, total=False):
    question: str
    chat_history: list[BaseMessage]
    filter: dict[str, Any] | None
    standalone_question: str
    documents: list[Document]
    text: str
    path: str


class SessionLocks:
    """One asyncio lock per session id, so turns of a session never interleave.

    A session's entry lives only while a call holds or waits for its lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]


class ConversationalRetrievalChain:
    """Answers a question from retrieved documents, or conversationally when none match."""

    def __init__(
        self,
        *,
        condenser: QuestionCondenser,
        retriever: ScoredRetriever,
        synthesizer: AnswerSynthesizer,
        fallback: FallbackConversational,
        memory: ConversationMemory | None = None,
        config: ChainConfig | None = None,
        events: ChainEvents | None = None,
    ) -> None:
        self.condenser = condenser
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.fallback = fallback
        self.memory = memory or resolve_memory()
        self.config = config or ChainConfig()
        self.events = events or LoggingChainEvents(verbose=self.config.verbose)
        self.locks = SessionLocks()
        self.graph = self.build_graph().compile()

    @classmethod
    def from_llm(
        cls,
        llm: Runnable,
        retriever: ScoredRetriever,
        *,
        config: ChainConfig | None = None,
        memory: ConversationMemory | None = None,
        condense_llm: Runnable | None = None,
        events: ChainEvents | None = None,
    ) -> ConversationalRetrievalChain:
        config = config or ChainConfig()
        return cls(
            condenser=QuestionCondenser(condense_llm or llm),
            retriever=retriever,
            synthesizer=build_synthesizer(llm, config),
            fallback=FallbackConversational(llm, config.system_message),
            memory=memory,
            config=config,
            events=events,
        )

    def build_graph(self) -> StateGraph:
        graph = StateGraph(ChainState)
        graph.add_node("condense", self.condense_node)
        graph.add_node("retrieve", self.retrieve_node)
        graph.add_node("synthesize", self.synthesize_node)
        graph.add_node("fallback", self.fallback_node)
        graph.add_edge(START, "condense")
        graph.add_edge("condense", "retrieve")
        graph.add_conditional_edges("retrieve", route_on_documents, ["synthesize", "fallback"])
        graph.add_edge("synthesize", END)
        graph.add_edge("fallback", END)
        return graph

    async def condense_node(self, state: ChainState) -> ChainState:
        with traced_span("condense"):
            standalone = await self.condenser.acondense(state["question"], state["chat_history"])
        self.events.condensed(state["question"], standalone)
        return {"standalone_question": standalone}

    async def retrieve_node(self, state: ChainState) -> ChainState:
        question = state["standalone_question"]
        with traced_span("retrieve"):
            scored = await self.retriever.aretrieve(question, state.get("filter"))
        self.events.retrieved(question, len(scored))
        return {"documents": [item.document for item in scored]}

    async def synthesize_node(self, state: ChainState, config: RunnableConfig) -> ChainState:
        on_token = _token_callback(config)
        with traced_span("synthesize"):
            text = await self.synthesizer.asynthesize(
                state["standalone_question"], state["documents"], state["chat_history"], on_token
            )
        return {"text": text, "path": "synthesize"}

    async def fallback_node(self, state: ChainState, config: RunnableConfig) -> ChainState:
        on_token = _token_callback(config)
        with traced_span("fallback"):
            # the original question: the condensed one found nothing
            text = await self.fallback.aanswer(state["question"], state["chat_history"], on_token)
        return {"text": text, "path": "fallback"}

    async def acall(
        self,
        payload: Mapping[str, Any],
        *,
        filter: dict[str, Any] | None = None,
        on_token: TokenCallback | None = None,
    ) -> OrchestrationResult:
        """Run the graph on a payload holding the question and chat-history keys.

        Memory is neither read nor written here.
        """
        keys = self.memory.keys
        if keys.input_key not in payload:
            raise ValidationError(f"Question key {keys.input_key} not found.")
        if keys.memory_key not in payload:
            raise ValidationError(f"Chat history key {keys.memory_key} not found.")

        start = perf_counter()
        state: ChainState = {
            "question": payload[keys.input_key],
            "chat_history": list(payload[keys.memory_key] or []),
            "filter": filter,
        }
        try:
            final_state = await self.graph.ainvoke(state, config={"configurable": {"on_token": on_token}})
        except ChainError as exc:
            self.events.failed("graph", exc)
            raise
        latency = (perf_counter() - start) * 1000
        self.events.answered(final_state["path"], latency)

        sources = list(final_state["documents"]) if self.config.return_source_documents else None
        return OrchestrationResult(
            answer=final_state["text"],
            source_documents=sources,
            standalone_question=final_state["standalone_question"],
            used_fallback=final_state["path"] == "fallback",
            latency_ms=latency,
        )

    async def ainvoke(
        self,
        question: str,
        external_history: Sequence[Message | Mapping[str, Any]] | None = None,
        *,
        session_id: str = DEFAULT_SESSION,
        filter: dict[str, Any] | None = None,
        on_token: TokenCallback | None = None,
    ) -> OrchestrationResult:
        keys = self.memory.keys
        async with self.locks.hold(session_id):
            if external_history is not None:
                await self.memory.aseed(session_id, to_chat_history(external_history))
            payload: dict[str, Any] = {keys.input_key: question}
            payload.update(await self.memory.aload_variables(session_id))
            result = await self.acall(payload, filter=filter, on_token=on_token)
            await self.memory.asave_context(session_id, {keys.input_key: question}, {keys.output_key: result.answer})
        return result

    def invoke(
        self,
        question: str,
        external_history: Sequence[Message | Mapping[str, Any]] | None = None,
        *,
        session_id: str = DEFAULT_SESSION,
        filter: dict[str, Any] | None = None,
    ) -> OrchestrationResult:
        return run_sync(self.ainvoke(question, external_history, session_id=session_id, filter=filter))


def route_on_documents(state: ChainState) -> Literal["synthesize", "fallback"]:
    return "synthesize" if state.get("documents") else "fallback"


def _token_callback(config: RunnableConfig | None) -> TokenCallback | None:
    return ((config or {}).get("configurable") or {}).get("on_token")


def build_chain(settings: AppSettings | None = None) -> ConversationalRetrievalChain:
    """Wire the production chain: chat model, Pinecone retriever and memory."""

    settings = settings or get_settings()
    config = ChainConfig.from_settings(settings)
    retriever = ScoredRetriever.from_settings(build_pinecone_index(settings), build_embeddings(settings), settings)
    return ConversationalRetrievalChain.from_llm(
        build_chat_model(settings, streaming=True),
        retriever,
        config=config,
        memory=resolve_memory(build_long_term_memory(settings)),
        condense_llm=build_chat_model(settings),
        events=LoggingChainEvents(
            verbose=config.verbose, record_metrics=settings.observability.enable_prometheus
        ),
    )


@lru_cache
def get_chain() -> ConversationalRetrievalChain:
    return build_chain()
