"""Rewrites a follow-up question into a standalone question."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from langchain_core.messages import BaseMessage, get_buffer_string
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import BasePromptTemplate
from langchain_core.runnables import Runnable

from .errors import BackendError, ChainError, ProtocolError
from .llm import message_text, run_sync
from .prompts import condense_question_prompt


def serialize_history(history: Sequence[BaseMessage]) -> str:
    """Render history as ``human: ...`` / ``assistant: ...`` lines, newest last."""

    return get_buffer_string(list(history), human_prefix="human", ai_prefix="assistant")


def single_output(result: Any) -> str:
    if isinstance(result, Mapping):
        if len(result) != 1:
            raise ProtocolError(
                f"Transform returned {len(result)} outputs ({', '.join(map(str, result))}); "
                "only single-output transforms are supported here"
            )
        (value,) = result.values()
        return message_text(value)
    return message_text(result)


class QuestionCondenser:
    """Condenses ``question`` + history into a standalone question.

    ``chain`` may be any runnable taking ``{"question", "chat_history"}``; by default
    it is ``prompt | llm | StrOutputParser()``.
    """

    def __init__(
        self,
        llm: Runnable | None = None,
        *,
        prompt: BasePromptTemplate = condense_question_prompt,
        chain: Runnable | None = None,
    ) -> None:
        if chain is None:
            if llm is None:
                raise ValueError("QuestionCondenser needs either an llm or a chain")
            chain = prompt | llm | StrOutputParser()
        self.chain = chain

    async def acondense(self, question: str, history: Sequence[BaseMessage]) -> str:
        if not history:
            return question
        inputs = {"question": question, "chat_history": serialize_history(history)}
        try:
            result = await self.chain.ainvoke(inputs)
        except ChainError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Question condensing failed: {exc}") from exc
        return single_output(result).strip()

    def condense(self, question: str, history: Sequence[BaseMessage]) -> str:
        return run_sync(self.acondense(question, history))
