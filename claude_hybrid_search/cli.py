#!/usr/bin/env python3
"""
Command-line interface for Claude Hybrid Search.

Provides commands for indexing Claude Code sessions, searching and listing
them, and resuming a session found by search.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, List, Optional

import click

from .config import Config
from .embeddings import EmbeddingGenerator
from .indexer import IndexStats, SessionIndexer
from .model_setup import download_model, verify_model
from .ranking import HybridSearcher, SearchResult, parse_timestamp
from .resume import ResumeError, resume_session
from .storage import SessionDocument, SessionStore, StorageConfig, StorageError

logger: logging.Logger = logging.getLogger(__name__)

LIST_LIMIT = 100


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def short_path(path: str) -> str:
    """Abbreviate long project paths to their last two components."""
    parts = path.split("/")
    if len(parts) > 3:
        return f".../{parts[-2]}/{parts[-1]}"
    return path


def format_date(value: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return value[:16]
    return parsed.strftime("%Y-%m-%d %H:%M")


class HybridSearchCLI:
    """Wires config, store, embedder, indexer and searcher together."""

    def __init__(self, config: Config) -> None:
        self.config: Config = config
        self.config.data_path.mkdir(parents=True, exist_ok=True)

        self.store: SessionStore = SessionStore(StorageConfig(db_path=str(config.db_path)))
        self._embedder: Optional[EmbeddingGenerator] = None

    @property
    def embedder(self) -> EmbeddingGenerator:
        # Loaded lazily; stats, config and resume never need the model
        if self._embedder is None:
            self._embedder = EmbeddingGenerator.from_model_dir(self.config.model_dir)
            if not self._embedder.is_available:
                click.echo(
                    "⚠️  Embedding model not available, using keyword search only", err=True
                )
        return self._embedder

    def indexer(self) -> SessionIndexer:
        return SessionIndexer(self.store, self.embedder, self.config)

    def index_sessions(self, force: bool = False, days: Optional[int] = None) -> IndexStats:
        """Run a full indexing pass."""
        self.store.initialize()
        return self.indexer().index_all(force=force, days_filter=days)

    def refresh(self) -> None:
        """Pick up sessions changed since the last run."""
        self.store.initialize()
        stats = self.indexer().jit_index()
        if stats.indexed or stats.errored:
            logger.info(f"Refreshed index: {stats.indexed} indexed, {stats.errored} errors")

    def search_sessions(
        self,
        query: str,
        limit: int,
        days: Optional[int] = None,
        project: Optional[str] = None,
        lexical_weight: Optional[float] = None,
        vector_weight: Optional[float] = None,
    ) -> List[SearchResult]:
        """Search indexed sessions."""
        self.refresh()
        searcher = HybridSearcher(self.store, self.embedder, self.config)
        return searcher.hybrid_search(
            query,
            limit=limit,
            lexical_weight=lexical_weight,
            vector_weight=vector_weight,
            project=project,
            days=days,
        )

    def list_sessions(self, days: Optional[int], project: Optional[str]) -> List[SessionDocument]:
        self.refresh()
        return self.store.list(days=days, project=project, limit=LIST_LIMIT)

    def get_index_stats(self) -> Dict[str, Any]:
        """Get statistics about the current index."""
        self.store.initialize()
        return self.store.get_stats()

    def close(self) -> None:
        self.store.close()


def print_document_line(index: Optional[int], document: SessionDocument, score: Optional[float] = None) -> None:
    branch = f" [{document.git_branch}]" if document.git_branch else ""
    if index is not None:
        click.echo(f"{index}. {document.title} (score: {score:.4f})")
        click.echo(f"   {format_date(document.created_at)} {short_path(document.project_path)}{branch}")
        click.echo(f"   id: {document.session_id}")
        click.echo()
    else:
        click.echo(
            f"  {format_date(document.created_at)} {document.title} "
            f"{short_path(document.project_path)}{branch}"
        )
        click.echo(f"    id: {document.session_id}")


@click.group()
@click.option(
    "--data-dir",
    default=None,
    help="Data directory for the index and models (default: ~/.claude-hybrid-search)",
)
@click.option("--claude-dir", default=None, help="Claude projects directory")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], claude_dir: Optional[str], verbose: bool) -> None:
    """Claude Hybrid Search CLI - keyword + semantic search over Claude Code sessions."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = Config.load(data_dir=data_dir, claude_dir=claude_dir)


@cli.command()
@click.option("--force", is_flag=True, help="Reindex everything, ignoring staleness checks")
@click.option("--days", type=int, default=None, help="Only index sessions from the last N days")
@click.pass_context
def index(ctx: click.Context, force: bool, days: Optional[int]) -> None:
    """Build or update the search index."""
    cli_instance = HybridSearchCLI(ctx.obj["config"])
    click.echo("🚀 Indexing Claude Code sessions...")

    try:
        stats = cli_instance.index_sessions(force=force, days=days)
    except StorageError as e:
        click.echo(f"❌ Indexing failed: {e}")
        sys.exit(1)
    finally:
        cli_instance.close()

    click.echo("\n🎉 Indexing complete!")
    click.echo("📊 Statistics:")
    click.echo(f"   • Sessions indexed: {stats.indexed}")
    click.echo(f"   • Sessions skipped: {stats.skipped}")
    click.echo(f"   • Errors: {stats.errored}")
    click.echo(f"   • Duration: {stats.duration:.1f}s")


@cli.command()
@click.argument("query")
@click.option("--days", type=int, default=None, help="Only search sessions from the last N days")
@click.option("--project", help="Filter by project path (substring match)")
@click.option("--limit", type=int, default=None, help="Maximum number of results")
@click.option("--json", "output_json", is_flag=True, help="Output results as JSON")
@click.option("--lexical-weight", type=float, default=None, help="Keyword weight in fusion")
@click.option("--vector-weight", type=float, default=None, help="Vector weight in fusion")
@click.option("--resume", "resume_top", is_flag=True, help="Resume the best match in Claude Code")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    days: Optional[int],
    project: Optional[str],
    limit: Optional[int],
    output_json: bool,
    lexical_weight: Optional[float],
    vector_weight: Optional[float],
    resume_top: bool,
) -> None:
    """Search sessions using hybrid keyword + vector search."""
    config = ctx.obj["config"]
    cli_instance = HybridSearchCLI(config)

    try:
        results = cli_instance.search_sessions(
            query,
            limit=limit if limit is not None else config.max_results,
            days=days,
            project=project,
            lexical_weight=lexical_weight,
            vector_weight=vector_weight,
        )
    except StorageError as e:
        click.echo(f"❌ Search failed: {e}")
        sys.exit(1)
    finally:
        cli_instance.close()

    if output_json:
        click.echo(json.dumps([result.to_dict() for result in results], indent=2))
    elif not results:
        click.echo(f"🔍 No sessions found matching '{query}'")
        click.echo("Try running `claude-hybrid-search index` first, or broaden your search.")
    else:
        click.echo(f"🔍 Found {len(results)} results for: '{query}'")
        click.echo()
        for i, result in enumerate(results, 1):
            print_document_line(i, result.document, result.score)

    if resume_top and results:
        top = results[0]
        click.echo(f"→ Resuming session {top.session_id[:8]}...", err=True)
        try:
            resume_session(top.session_id, top.document.project_path)
        except ResumeError as e:
            click.echo(f"❌ {e}")
            sys.exit(1)


@cli.command(name="list")
@click.option("--days", type=int, default=None, help="Only list sessions from the last N days")
@click.option("--project", help="Filter by project path (substring match)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_command(
    ctx: click.Context, days: Optional[int], project: Optional[str], output_json: bool
) -> None:
    """List sessions without searching."""
    config = ctx.obj["config"]
    cli_instance = HybridSearchCLI(config)

    try:
        sessions = cli_instance.list_sessions(
            days=days if days is not None else config.default_days, project=project
        )
    except StorageError as e:
        click.echo(f"❌ Failed to list sessions: {e}")
        sys.exit(1)
    finally:
        cli_instance.close()

    if output_json:
        click.echo(
            json.dumps(
                [{k: v for k, v in s.to_dict().items() if k != "full_text"} for s in sessions],
                indent=2,
            )
        )
        return

    if not sessions:
        click.echo("No sessions found. Try running `claude-hybrid-search index` first.")
        return

    click.echo(f"Claude Code Sessions ({len(sessions)} sessions)\n")
    for document in sessions:
        print_document_line(None, document)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show statistics about the current index."""
    cli_instance = HybridSearchCLI(ctx.obj["config"])

    try:
        stats = cli_instance.get_index_stats()
    except StorageError as e:
        click.echo(f"❌ Failed to get stats: {e}")
        sys.exit(1)
    finally:
        cli_instance.close()

    click.echo("📊 Index Statistics:")
    click.echo(f"   • Total sessions: {stats['total_sessions']:,}")
    click.echo(f"   • Total projects: {stats['total_projects']:,}")
    click.echo(f"   • Sessions with embeddings: {stats['total_embeddings']:,}")
    click.echo(f"   • Database size: {stats['database_size'] / 1024 / 1024:.1f} MB")
    click.echo(f"   • Last indexed: {stats['last_indexed'] or 'never'}")
    click.echo(f"   • Last full index: {stats['last_full_index'] or 'never'}")


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show the configuration, creating a default config file if none exists."""
    current = ctx.obj["config"]

    click.echo(f"Config file: {current.config_path}\n")
    click.echo(json.dumps(current.to_dict(), indent=2))
    click.echo(f"\nData directory: {current.data_path}")
    click.echo(f"Claude directory: {current.claude_path}")
    click.echo(f"Model directory: {current.model_dir}")

    if not current.config_path.exists():
        path = current.save()
        click.echo(f"\n📝 No config file found. Created default at {path}")


@cli.command(name="setup-model")
@click.option("--force", is_flag=True, help="Re-download even if the model exists")
@click.pass_context
def setup_model(ctx: click.Context, force: bool) -> None:
    """Download the embedding model used for vector search."""
    current = ctx.obj["config"]

    click.echo(f"📥 Downloading embedding model to {current.model_dir}...")
    try:
        model_path = download_model(current.model_dir, force_download=force)
    except Exception as e:
        click.echo(f"❌ Error downloading model: {e}")
        sys.exit(1)

    if verify_model(model_path):
        click.echo(f"✅ Model ready at {model_path}")
    else:
        click.echo("❌ Model verification failed")
        sys.exit(1)


@cli.command()
@click.argument("session_id")
@click.pass_context
def resume(ctx: click.Context, session_id: str) -> None:
    """Resume a session in Claude Code."""
    cli_instance = HybridSearchCLI(ctx.obj["config"])

    try:
        cli_instance.store.initialize()
        document = cli_instance.store.get(session_id)
    except StorageError as e:
        click.echo(f"❌ Failed to open index: {e}")
        sys.exit(1)
    finally:
        cli_instance.close()

    project_path = document.project_path if document else None
    try:
        resume_session(session_id, project_path)
    except ResumeError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
