"""Chat model construction and the shared generation call."""
from __future__ import annotations

import asyncio
import inspect
import os
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_core.runnables import Runnable
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from .config import AppSettings
from .errors import BackendError, ChainError, ConfigurationError

TokenCallback = Callable[[str], Awaitable[None] | None]
T = TypeVar("T")


def build_chat_model(settings: AppSettings, *, streaming: bool = False) -> BaseChatModel:
    """Create the chat model selected by ``settings.model.llm_provider``."""

    model = settings.model
    if model.llm_provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set but llm_provider=openai")
        openai_kwargs: dict[str, Any] = {
            "model": model.llm_model,
            "temperature": model.temperature,
            "max_retries": 2,
            "max_tokens": model.max_output_tokens,
            "api_key": api_key,
            "streaming": streaming,
        }
        if model.openai_api_base:
            openai_kwargs["base_url"] = model.openai_api_base
        return ChatOpenAI(**openai_kwargs)
    return ChatOllama(
        model=model.llm_model,
        base_url=model.llm_base_url,
        temperature=model.temperature,
        num_ctx=model.max_input_tokens,
    )


def message_text(message: Any) -> str:
    """Flatten a model output (string, message or message chunk) into text."""

    if isinstance(message, str):
        return message
    content = message.content if isinstance(message, BaseMessage) else getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # LangChain >=0.2 may return a list of parts
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return str(content)


async def generate_text(llm: Runnable, prompt_value: Any, on_token: TokenCallback | None = None) -> str:
    """Run one generation call, pushing fragments to ``on_token`` when given.

    The full text is always returned; streaming only changes how it is produced.
    """

    try:
        if on_token is None:
            return message_text(await llm.ainvoke(prompt_value)).strip()
        parts: list[str] = []
        async for chunk in llm.astream(prompt_value):
            fragment = message_text(chunk)
            if not fragment:
                continue
            parts.append(fragment)
            delivered = on_token(fragment)
            if inspect.isawaitable(delivered):
                await delivered
        return "".join(parts).strip()
    except ChainError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise BackendError(f"Generation backend failed: {exc}") from exc


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` to completion from synchronous code.

    Inside a running event loop (an async caller, a notebook) this raises
    ``RuntimeError``; await the async variant there instead.
    """

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError("Synchronous call made inside a running event loop; await the async method instead")
