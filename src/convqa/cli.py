"""Typer CLI for asking questions against the configured index."""
from __future__ import annotations

import json
from pathlib import Path

import typer

from . import configure_cache
from .config import get_settings
from .graph import build_chain
from .observability import configure_logging, configure_tracing

app = typer.Typer(help="CLI for the conversational retrieval QA chain")


@app.callback()
def main() -> None:
    """Conversational retrieval QA."""


@app.command()
def ask(
    question: str,
    history: Path | None = typer.Option(None, help="JSON file with a list of {role, content} messages"),
    session: str = typer.Option("cli", help="Conversation session id"),
    sources: bool = typer.Option(False, help="Print the source documents used"),
    as_json: bool = typer.Option(False, "--json", help="Print {text, sourceDocuments} as JSON"),
) -> None:
    """Ask a single question, optionally continuing a saved conversation."""

    settings = get_settings()
    configure_logging(settings.observability.verbose)
    configure_tracing(settings)
    configure_cache(settings)
    if sources:
        settings = settings.model_copy(
            update={"chain": settings.chain.model_copy(update={"return_source_documents": True})}
        )
    messages = json.loads(history.read_text(encoding="utf-8")) if history else None
    chain = build_chain(settings)
    result = chain.invoke(question, messages, session_id=session)
    if as_json:
        typer.echo(json.dumps(result.as_dict(), ensure_ascii=False))
        return
    typer.echo(result.answer)
    for doc in result.source_documents or []:
        typer.echo(f"- {doc.metadata.get('source', 'unknown')}: {doc.page_content[:120]}")


if __name__ == "__main__":
    app()
