from __future__ import annotations

from typing import Any

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from convqa.graph import ConversationalRetrievalChain
from convqa.models import ChainConfig
from convqa.retrieval import ScoredRetriever
from fakes import FakeIndex, ScriptedLLM


@pytest.fixture
def embeddings() -> DeterministicFakeEmbedding:
    return DeterministicFakeEmbedding(size=8)


@pytest.fixture
def make_chain(embeddings):
    def factory(
        index: FakeIndex,
        llm: ScriptedLLM,
        *,
        score_threshold: float | None = None,
        default_filter: dict[str, Any] | None = None,
        config: ChainConfig | None = None,
        memory=None,
    ) -> ConversationalRetrievalChain:
        retriever = ScoredRetriever(index, embeddings, k=4, filter=default_filter, score_threshold=score_threshold)
        return ConversationalRetrievalChain.from_llm(
            llm.runnable,
            retriever,
            config=config or ChainConfig(return_source_documents=True),
            memory=memory,
        )

    return factory
