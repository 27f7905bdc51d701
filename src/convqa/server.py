"""FastAPI server exposing the conversational QA chain."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import configure_cache
from .config import get_settings
from .errors import ChainError, ConfigurationError, ValidationError
from .graph import ConversationalRetrievalChain, get_chain
from .models import OrchestrationResult
from .observability import configure_logging, configure_tracing, logger

STREAM_ERROR_PREFIX = "\n[error] "


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Apply logging, tracing and cache settings before serving requests."""
    settings = get_settings()
    configure_logging(settings.observability.verbose)
    configure_tracing(settings)
    configure_cache(settings)
    yield


app = FastAPI(title="Conversational Retrieval QA", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR: dict[type[ChainError], int] = {
    ValidationError: 422,
    ConfigurationError: 400,
}


class HistoryMessage(BaseModel):
    role: str | None = Field(default=None, description="human or assistant")
    type: str | None = Field(default=None, description="userMessage or apiMessage")
    content: str | None = None
    message: str | None = None


class ChatRequest(BaseModel):
    question: str = Field(..., description="User question")
    session_id: str = Field(default="default")
    history: list[HistoryMessage] | None = Field(default=None, description="Caller-owned conversation so far")
    filters: dict | None = Field(default=None, description="Metadata filters")


class SourceDocument(BaseModel):
    page_content: str
    metadata: dict[str, Any]


class ChatResponse(BaseModel):
    text: str
    source_documents: list[SourceDocument] | None
    standalone_question: str | None
    used_fallback: bool
    latency_ms: float | None


def _to_response(result: OrchestrationResult) -> ChatResponse:
    sources = None
    if result.source_documents is not None:
        sources = [
            SourceDocument(page_content=doc.page_content, metadata=dict(doc.metadata)) for doc in result.source_documents
        ]
    return ChatResponse(
        text=result.answer,
        source_documents=sources,
        standalone_question=result.standalone_question,
        used_fallback=result.used_fallback,
        latency_ms=result.latency_ms,
    )


def _history(payload: ChatRequest) -> list[dict] | None:
    if payload.history is None:
        return None
    return [item.model_dump(exclude_none=True) for item in payload.history]


@app.exception_handler(ChainError)
async def chain_error_handler(request: Request, exc: ChainError) -> JSONResponse:
    status = next((code for kind, code in _STATUS_BY_ERROR.items() if isinstance(exc, kind)), 502)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
async def chat(payload: ChatRequest, chain: ConversationalRetrievalChain = Depends(get_chain)) -> ChatResponse:  # noqa: B008
    result = await chain.ainvoke(
        payload.question,
        _history(payload),
        session_id=payload.session_id,
        filter=payload.filters,
    )
    return _to_response(result)


@app.post("/chat/stream")
async def chat_stream(
    payload: ChatRequest, chain: ConversationalRetrievalChain = Depends(get_chain)  # noqa: B008
) -> Response:
    """Stream answer tokens as plain text.

    Failures before the first token get the normal JSON error mapping. A failure
    after output has started ends the body with an ``[error]`` line.
    """
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def run() -> None:
        try:
            await chain.ainvoke(
                payload.question,
                _history(payload),
                session_id=payload.session_id,
                filter=payload.filters,
                on_token=queue.put,
            )
        finally:
            await queue.put(None)

    task = asyncio.create_task(run())
    try:
        first = await queue.get()
    except asyncio.CancelledError:
        task.cancel()
        raise
    if first is None:
        # finished before producing output; errors surface through the exception handlers
        await task
        return PlainTextResponse("")

    async def tokens() -> AsyncIterator[str]:
        token = first
        try:
            while token is not None:
                yield token
                token = await queue.get()
            await task
        except ChainError as exc:
            logger.warning("Streaming chat failed after output started: %s", exc)
            yield error_frame(exc)
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    return StreamingResponse(tokens(), media_type="text/plain")


def error_frame(exc: ChainError) -> str:
    return f"{STREAM_ERROR_PREFIX}{type(exc).__name__}: {exc}\n"


__all__ = ["app"]
