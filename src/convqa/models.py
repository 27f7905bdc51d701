"""Core domain models for the conversational retrieval chain."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from langchain_core.documents import Document
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .config import AppSettings

Role = Literal["human", "assistant"]

# Discriminator values accepted on externally supplied history entries.
_HUMAN_TAGS = {"human", "user", "userMessage"}
_ASSISTANT_TAGS = {"assistant", "ai", "apiMessage"}


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Message | None:
        """Build a message from a role-tagged mapping; unknown tags yield ``None``."""
        tag = payload.get("role") or payload.get("type")
        content = payload.get("content")
        if content is None:
            content = payload.get("message", "")
        if tag in _HUMAN_TAGS:
            return cls(role="human", content=str(content))
        if tag in _ASSISTANT_TAGS:
            return cls(role="assistant", content=str(content))
        return None

    def to_langchain(self) -> BaseMessage:
        if self.role == "human":
            return HumanMessage(content=self.content)
        return AIMessage(content=self.content)


def to_chat_history(messages: Sequence[Message | Mapping[str, Any]]) -> list[BaseMessage]:
    history: list[BaseMessage] = []
    for item in messages:
        message = item if isinstance(item, Message) else Message.from_payload(item)
        if message is not None:
            history.append(message.to_langchain())
    return history


@dataclass(frozen=True, slots=True)
class ScoredDocument:
    document: Document
    score: float


@dataclass(frozen=True, slots=True)
class RetrievalQuery:
    """One top-K index query. ``score_threshold`` overrides the retriever default when set."""

    vector: list[float]
    top_k: int = 4
    namespace: str | None = None
    filter: dict[str, Any] | None = None
    score_threshold: float | None = None

    def __post_init__(self) -> None:
        if self.top_k <= 0:
            raise ConfigurationError(f"top_k must be positive, got {self.top_k}")


class CombineStrategy(str, Enum):
    STUFF = "stuff"
    MAP_REDUCE = "map_reduce"
    REFINE = "refine"

    @classmethod
    def parse(cls, value: str | CombineStrategy) -> CombineStrategy:
        try:
            return cls(value)
        except ValueError as exc:
            options = ", ".join(item.value for item in cls)
            raise ConfigurationError(f"Unknown combine strategy {value!r}; expected one of {options}") from exc


@dataclass(frozen=True, slots=True)
class ChainConfig:
    combine_strategy: CombineStrategy = CombineStrategy.STUFF
    system_message: str | None = None
    return_source_documents: bool = False
    verbose: bool = False
    max_concurrency: int = 4

    def __post_init__(self) -> None:
        object.__setattr__(self, "combine_strategy", CombineStrategy.parse(self.combine_strategy))
        if self.max_concurrency <= 0:
            raise ConfigurationError("max_concurrency must be positive")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> ChainConfig:
        return cls(
            combine_strategy=CombineStrategy.parse(settings.chain.combine_strategy),
            system_message=settings.chain.system_message or None,
            return_source_documents=settings.chain.return_source_documents,
            verbose=settings.observability.verbose,
            max_concurrency=settings.chain.max_concurrency,
        )


@dataclass(slots=True)
class OrchestrationResult:
    answer: str
    source_documents: list[Document] | None = None
    standalone_question: str | None = None
    used_fallback: bool = False
    latency_ms: float | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.answer}
        if self.source_documents is not None:
            payload["sourceDocuments"] = [
                {"pageContent": doc.page_content, "metadata": dict(doc.metadata)} for doc in self.source_documents
            ]
        return payload
