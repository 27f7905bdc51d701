"""Query embedding model used to turn questions into index vectors."""
from __future__ import annotations

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings

from .config import AppSettings


def build_embeddings(settings: AppSettings) -> Embeddings:
    """Load the sentence embedding model the index was built with."""

    return HuggingFaceEmbeddings(
        model_name=settings.model.embed_model,
        model_kwargs={"trust_remote_code": True},
        encode_kwargs={"normalize_embeddings": True},
    )
