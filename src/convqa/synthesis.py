"""Answer synthesis over retrieved documents: stuff, map-reduce and refine."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence

from langchain_core.documents import Document
from langchain_core.messages import BaseMessage
from langchain_core.prompts import PromptTemplate
from langchain_core.runnables import Runnable

from .llm import TokenCallback, generate_text
from .models import ChainConfig, CombineStrategy
from .prompts import (
    COMBINE_TEMPLATE,
    DEFAULT_COMBINE_TEMPLATE,
    DEFAULT_QA_TEMPLATE,
    DEFAULT_REFINE_TEMPLATE,
    MAP_TEMPLATE,
    QA_TEMPLATE,
    REFINE_TEMPLATE,
    with_system_message,
)

DOCUMENT_SEPARATOR = "\n\n"


class AnswerSynthesizer(ABC):
    """Combines retrieved documents into one answer.

    Prompts are resolved in ``__init__`` so the system message is applied once per
    chain, not per call.
    """

    strategy: CombineStrategy

    def __init__(self, llm: Runnable, system_message: str | None = None) -> None:
        self.llm = llm
        self.system_message = system_message

    @abstractmethod
    async def asynthesize(
        self,
        question: str,
        documents: Sequence[Document],
        history: Sequence[BaseMessage] = (),
        on_token: TokenCallback | None = None,
    ) -> str:
        """Answer ``question`` from ``documents``."""


class StuffSynthesizer(AnswerSynthesizer):
    strategy = CombineStrategy.STUFF

    def __init__(self, llm: Runnable, system_message: str | None = None) -> None:
        super().__init__(llm, system_message)
        self.prompt = with_system_message(system_message, QA_TEMPLATE, DEFAULT_QA_TEMPLATE)

    async def asynthesize(self, question, documents, history=(), on_token=None) -> str:
        context = DOCUMENT_SEPARATOR.join(doc.page_content for doc in documents)
        prompt_value = self.prompt.format_prompt(context=context, question=question)
        return await generate_text(self.llm, prompt_value, on_token)


class MapReduceSynthesizer(AnswerSynthesizer):
    """Extracts from each document concurrently, then combines the extracts."""

    strategy = CombineStrategy.MAP_REDUCE

    def __init__(self, llm: Runnable, system_message: str | None = None, max_concurrency: int = 4) -> None:
        super().__init__(llm, system_message)
        self.map_prompt = PromptTemplate.from_template(MAP_TEMPLATE)
        self.combine_prompt = with_system_message(system_message, COMBINE_TEMPLATE, DEFAULT_COMBINE_TEMPLATE)
        self.max_concurrency = max_concurrency

    async def _extract(self, semaphore: asyncio.Semaphore, question: str, document: Document) -> str:
        async with semaphore:
            prompt_value = self.map_prompt.format_prompt(context=document.page_content, question=question)
            return await generate_text(self.llm, prompt_value)

    async def asynthesize(self, question, documents, history=(), on_token=None) -> str:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        # gather keeps document order, so summaries line up with their sources
        extracts = await asyncio.gather(*(self._extract(semaphore, question, doc) for doc in documents))
        summaries = DOCUMENT_SEPARATOR.join(extract for extract in extracts if extract)
        prompt_value = self.combine_prompt.format_prompt(summaries=summaries, question=question)
        return await generate_text(self.llm, prompt_value, on_token)


class RefineSynthesizer(AnswerSynthesizer):
    """Answers from the first document, then refines once per following document.

    Strictly sequential: document order changes the result.
    """

    strategy = CombineStrategy.REFINE

    def __init__(self, llm: Runnable, system_message: str | None = None) -> None:
        super().__init__(llm, system_message)
        self.initial_prompt = with_system_message(system_message, QA_TEMPLATE, DEFAULT_QA_TEMPLATE)
        self.refine_prompt = with_system_message(system_message, REFINE_TEMPLATE, DEFAULT_REFINE_TEMPLATE)

    async def asynthesize(self, question, documents, history=(), on_token=None) -> str:
        if not documents:
            return ""
        last = len(documents) - 1
        first = self.initial_prompt.format_prompt(context=documents[0].page_content, question=question)
        answer = await generate_text(self.llm, first, on_token if last == 0 else None)
        for position, document in enumerate(documents[1:], start=1):
            prompt_value = self.refine_prompt.format_prompt(
                question=question,
                existing_answer=answer,
                context=document.page_content,
            )
            answer = await generate_text(self.llm, prompt_value, on_token if position == last else None)
        return answer


def build_synthesizer(llm: Runnable, config: ChainConfig) -> AnswerSynthesizer:
    """Instantiate the synthesizer for ``config.combine_strategy``."""

    strategy = CombineStrategy.parse(config.combine_strategy)
    if strategy is CombineStrategy.MAP_REDUCE:
        return MapReduceSynthesizer(llm, config.system_message, max_concurrency=config.max_concurrency)
    if strategy is CombineStrategy.REFINE:
        return RefineSynthesizer(llm, config.system_message)
    return StuffSynthesizer(llm, config.system_message)
