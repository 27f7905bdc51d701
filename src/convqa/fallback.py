"""Direct conversational answer used when retrieval finds no evidence."""
from __future__ import annotations

from collections.abc import Sequence

from langchain_core.messages import BaseMessage
from langchain_core.runnables import Runnable

from .condenser import serialize_history
from .llm import TokenCallback, generate_text
from .prompts import CONVERSATION_TEMPLATE, DEFAULT_CONVERSATION_TEMPLATE, with_system_message


class FallbackConversational:
    def __init__(self, llm: Runnable, system_message: str | None = None) -> None:
        self.llm = llm
        self.prompt = with_system_message(system_message, CONVERSATION_TEMPLATE, DEFAULT_CONVERSATION_TEMPLATE)

    async def aanswer(
        self,
        question: str,
        history: Sequence[BaseMessage],
        on_token: TokenCallback | None = None,
    ) -> str:
        prompt_value = self.prompt.format_prompt(question=question, chat_history=serialize_history(history))
        return await generate_text(self.llm, prompt_value, on_token)
