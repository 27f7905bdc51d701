"""Conversational retrieval QA: condense, retrieve, then answer or fall back."""

from __future__ import annotations

import logging

from langchain_community.cache import SQLiteCache
from langchain_core.globals import set_llm_cache

from .config import AppSettings

logger = logging.getLogger(__name__)


def configure_cache(settings: AppSettings) -> None:
    """Enable the LangChain SQLite LLM cache when configured."""

    if not settings.cache.enabled:
        return
    cache_path = settings.cache.path
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    set_llm_cache(SQLiteCache(str(cache_path)))
    logger.info("LangChain cache enabled at %s", cache_path)
