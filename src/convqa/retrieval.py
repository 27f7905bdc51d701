"""Score-thresholded nearest-neighbour retrieval over a vector index."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from pinecone import Pinecone

from .config import AppSettings
from .errors import BackendError, ConfigurationError
from .models import RetrievalQuery, ScoredDocument

logger = logging.getLogger(__name__)


class VectorIndex(Protocol):
    """Anything answering a Pinecone-style ``query`` call."""

    def query(
        self,
        *,
        vector: list[float],
        top_k: int,
        namespace: str | None = None,
        filter: dict[str, Any] | None = None,
        include_metadata: bool = True,
    ) -> Any: ...


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


class ScoredRetriever:
    """Queries a vector index and keeps matches whose score clears the threshold."""

    def __init__(
        self,
        index: VectorIndex,
        embeddings: Embeddings,
        *,
        k: int = 4,
        namespace: str | None = None,
        filter: dict[str, Any] | None = None,
        score_threshold: float | None = None,
        text_key: str = "text",
    ) -> None:
        if k <= 0:
            raise ConfigurationError(f"k must be positive, got {k}")
        self.index = index
        self.embeddings = embeddings
        self.k = k
        self.namespace = namespace or None
        self.filter = filter or None
        self.score_threshold = score_threshold
        self.text_key = text_key

    @classmethod
    def from_settings(cls, index: VectorIndex, embeddings: Embeddings, settings: AppSettings) -> ScoredRetriever:
        retrieval = settings.retrieval
        return cls(
            index,
            embeddings,
            k=retrieval.top_k,
            namespace=retrieval.namespace,
            filter=retrieval.metadata_filter,
            score_threshold=retrieval.score_threshold,
            text_key=retrieval.text_key,
        )

    def _check_filters(self, filter: dict[str, Any] | None) -> None:
        if filter and self.filter:
            raise ConfigurationError("cannot provide both a query filter and a default retriever filter")

    def build_query(
        self, vector: list[float], filter: dict[str, Any] | None = None, score_threshold: float | None = None
    ) -> RetrievalQuery:
        return RetrievalQuery(
            vector=vector,
            top_k=self.k,
            namespace=self.namespace,
            filter=filter or None,
            score_threshold=self.score_threshold if score_threshold is None else score_threshold,
        )

    def search(self, query: RetrievalQuery) -> list[ScoredDocument]:
        self._check_filters(query.filter)
        effective_filter = query.filter or self.filter
        threshold = self.score_threshold if query.score_threshold is None else query.score_threshold
        try:
            response = self.index.query(
                vector=query.vector,
                top_k=query.top_k,
                namespace=query.namespace,
                filter=effective_filter,
                include_metadata=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Vector index query failed: {exc}") from exc

        results: list[ScoredDocument] = []
        for match in _field(response, "matches") or []:
            score = _field(match, "score")
            if threshold is not None and not (score and score >= threshold):
                logger.debug("Dropping match %s with score %s", _field(match, "id"), score)
                continue
            metadata = dict(_field(match, "metadata") or {})
            page_content = metadata.pop(self.text_key, "")
            document = Document(page_content=str(page_content or ""), metadata=metadata)
            results.append(ScoredDocument(document=document, score=float(score or 0.0)))
        return results

    def retrieve(self, question: str, filter: dict[str, Any] | None = None) -> list[ScoredDocument]:
        self._check_filters(filter)
        try:
            vector = self.embeddings.embed_query(question)
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Embedding backend failed: {exc}") from exc
        return self.search(self.build_query(vector, filter))

    async def aretrieve(self, question: str, filter: dict[str, Any] | None = None) -> list[ScoredDocument]:
        self._check_filters(filter)
        try:
            vector = await self.embeddings.aembed_query(question)
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Embedding backend failed: {exc}") from exc
        return await asyncio.to_thread(self.search, self.build_query(vector, filter))


def build_pinecone_index(settings: AppSettings) -> VectorIndex:
    """Open the existing Pinecone index named in the settings."""

    api_key = settings.retrieval.pinecone_api_key
    if api_key is None:
        raise ConfigurationError("CONVQA_RETRIEVAL__PINECONE_API_KEY is not set")
    client = Pinecone(api_key=api_key.get_secret_value())
    return client.Index(settings.retrieval.index_name)
