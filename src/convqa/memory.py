"""Chat-history storage behind fixed key names.

The chain always talks to memory through ``question`` / ``text`` / ``chat_history``.
A long-term backend is wrapped, never mutated; without one an in-process buffer is
used, which callers may reseed with the conversation they own.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from langchain_community.chat_message_histories import RedisChatMessageHistory
from langchain_core.chat_history import BaseChatMessageHistory, InMemoryChatMessageHistory
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .config import AppSettings
from .errors import BackendError, ValidationError

logger = logging.getLogger(__name__)

HistoryFactory = Callable[[str], BaseChatMessageHistory]


@dataclass(frozen=True, slots=True)
class MemoryKeys:
    input_key: str = "question"
    output_key: str = "text"
    memory_key: str = "chat_history"


MEMORY_KEYS = MemoryKeys()


class ConversationMemory:
    """Reads and appends turns of one session's history."""

    keys = MEMORY_KEYS
    long_term = True

    def __init__(self, history_factory: HistoryFactory) -> None:
        self.history_factory = history_factory

    async def aload(self, session_id: str) -> list[BaseMessage]:
        try:
            return list(await self.history_factory(session_id).aget_messages())
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Loading history for session {session_id} failed: {exc}") from exc

    async def aload_variables(self, session_id: str) -> dict[str, list[BaseMessage]]:
        return {self.keys.memory_key: await self.aload(session_id)}

    async def asave_context(self, session_id: str, inputs: Mapping[str, str], outputs: Mapping[str, str]) -> None:
        try:
            question = inputs[self.keys.input_key]
            answer = outputs[self.keys.output_key]
        except KeyError as exc:
            raise ValidationError(f"Memory key {exc.args[0]!r} not found") from exc
        try:
            history = self.history_factory(session_id)
            await history.aadd_messages([HumanMessage(content=question), AIMessage(content=answer)])
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Saving history for session {session_id} failed: {exc}") from exc

    async def aseed(self, session_id: str, messages: Sequence[BaseMessage]) -> bool:
        """Replace the session history; long-term stores are left untouched."""
        logger.debug("Ignoring external history for long-term session %s", session_id)
        return False


class BufferMemory(ConversationMemory):
    """In-process history, one buffer per session id."""

    long_term = False

    def __init__(self) -> None:
        self._buffers: dict[str, InMemoryChatMessageHistory] = {}
        super().__init__(self._buffer)

    def _buffer(self, session_id: str) -> InMemoryChatMessageHistory:
        if session_id not in self._buffers:
            self._buffers[session_id] = InMemoryChatMessageHistory()
        return self._buffers[session_id]

    async def aseed(self, session_id: str, messages: Sequence[BaseMessage]) -> bool:
        self._buffers[session_id] = InMemoryChatMessageHistory(messages=list(messages))
        return True


def resolve_memory(long_term: ConversationMemory | HistoryFactory | None = None) -> ConversationMemory:
    """Wrap a configured long-term store, or create the default buffer."""

    if long_term is None:
        return BufferMemory()
    if isinstance(long_term, ConversationMemory):
        return long_term
    return ConversationMemory(long_term)


def build_long_term_memory(settings: AppSettings) -> ConversationMemory | None:
    if settings.memory.backend != "redis":
        return None
    url = settings.memory.redis_url
    ttl = settings.memory.ttl_seconds

    def factory(session_id: str) -> BaseChatMessageHistory:
        return RedisChatMessageHistory(session_id=session_id, url=url, ttl=ttl)

    return ConversationMemory(factory)
