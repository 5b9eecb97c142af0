from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

import click
import questionary
from click_default_group import DefaultGroup
from rich.logging import RichHandler

from .classifier import DEFAULT_RULES, classify_line, rules_to_json
from .config import Settings
from .engine import SessionEngine
from .formatters import (
    format_results,
    render_results,
    render_results_table,
    render_sessions,
    render_timeline,
)
from .index import ParseLevel, Session, SessionFilter
from .indexer import IndexingError
from .loaders import SessionFile, discover_session_files
from .records import SOURCE_KINDS
from .timeutils import normalize_iso

LEVEL_CHOICES = [level.name.lower() for level in ParseLevel if level > ParseLevel.UNPARSED]
SOURCE_CHOICES = ["all", *SOURCE_KINDS]

db_option = click.option("--db", default=None, help="Database path (default: in-memory)")
source_option = click.option(
    "--source",
    type=click.Choice(SOURCE_CHOICES, case_sensitive=False),
    default="all",
    show_default=True,
)
sessions_dir_option = click.option(
    "--sessions-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Sessions directory override for the selected --source",
)


@click.group(cls=DefaultGroup, default="list", default_if_no_args=True)
@click.option("--verbose", "-v", is_flag=True, help="Show indexing and search logs")
def cli(verbose: bool) -> None:
    """Index and search Codex, Claude Code and Pi session logs."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True)],
        )


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(path_type=Path))
@db_option
@source_option
@sessions_dir_option
@click.option(
    "--level",
    type=click.Choice(LEVEL_CHOICES, case_sensitive=False),
    default="full",
    show_default=True,
    help="How far to parse each session",
)
@click.option("--force", is_flag=True, help="Re-parse even if the file is unchanged")
@click.option("--pick", is_flag=True, help="Choose sessions interactively")
@click.option("--workers", type=int, default=None, help="Parallel indexing workers")
def index(
    paths: tuple[Path, ...],
    db: str | None,
    source: str,
    sessions_dir: Path | None,
    level: str,
    force: bool,
    pick: bool,
    workers: int | None,
) -> None:
    """Index session files into DuckDB."""
    settings = _settings(db, source, sessions_dir, max_workers=workers)
    parse_level = ParseLevel.parse(level)
    failed = False

    with SessionEngine(settings) as engine:
        if paths:
            for path in paths:
                try:
                    session = engine.index_session(path, force_full_reparse=force, level=parse_level)
                except IndexingError as exc:
                    click.echo(f"  FAILED {path}: {exc}", err=True)
                    failed = True
                    continue
                click.echo(f"  OK {session.session_id} ({session.parse_level.name.lower()})")
        else:
            if pick:
                selected = _select_sessions(settings, source)
                if not selected:
                    click.echo("No sessions selected.")
                    return
                click.echo(f"Indexing {len(selected)} sessions...")
                report = engine.indexer.index_all(selected, parse_level, force, on_done=_echo_done)
            else:
                report = engine.indexer.refresh(
                    parse_level, source=source, force_full_reparse=force, on_done=_echo_done
                )
            for session_id in report.removed:
                click.echo(f"  REMOVED {session_id}")
            failed = bool(report.failures)

        stats = engine.stats()
        click.echo(
            f"\nIndex updated: {stats['session_count']} sessions, "
            f"{stats['message_count']} messages"
        )
    if failed:
        click.get_current_context().exit(1)


@cli.command(name="list")
@db_option
@source_option
@sessions_dir_option
@click.option("--cwd", "cwd_prefix", default=None, help="Only sessions under this directory")
@click.option(
    "--level",
    type=click.Choice(LEVEL_CHOICES, case_sensitive=False),
    default=None,
    help="Minimum parse level",
)
@click.option("--since", default=None, help="Only sessions modified after this date")
@click.option("--limit", default=50, show_default=True, help="Max sessions")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["rich", "json", "csv"], case_sensitive=False),
    default="rich",
    show_default=True,
)
def list_sessions(
    db: str | None,
    source: str,
    sessions_dir: Path | None,
    cwd_prefix: str | None,
    level: str | None,
    since: str | None,
    limit: int,
    output_format: str,
) -> None:
    """List sessions, newest first."""
    settings = _settings(db, source, sessions_dir)
    with SessionEngine(settings) as engine:
        _ensure_listed(engine, source)
        sessions = engine.list_sessions(
            SessionFilter(
                source_kind=None if source == "all" else source,
                cwd_prefix=cwd_prefix,
                min_level=ParseLevel.parse(level) if level else None,
                since=_normalize_since(since),
                limit=limit,
            )
        )
    rows = [session.to_dict() for session in sessions]
    formatted = format_results(rows, output_format)
    if formatted is not None:
        click.echo(formatted)
        return
    render_sessions(rows)


@cli.command()
@click.argument("query")
@db_option
@source_option
@sessions_dir_option
@click.option("--limit", default=None, type=int, help="Max results (default 160)")
@click.option("--per-session", default=None, type=int, help="Max results per session (default 3)")
@click.option("--context", default=0, show_default=True, help="Include N surrounding messages")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["rich", "table", "json", "csv"], case_sensitive=False),
    default="rich",
    show_default=True,
)
def search(
    query: str,
    db: str | None,
    source: str,
    sessions_dir: Path | None,
    limit: int | None,
    per_session: int | None,
    context: int,
    output_format: str,
) -> None:
    """Search session messages; all keywords must match."""
    settings = _settings(db, source, sessions_dir)
    with SessionEngine(settings) as engine:
        results = [item.to_dict() for item in engine.search(query, limit, per_session)]
        if context > 0:
            for result in results:
                if result["origin"] != "index":
                    continue
                ctx = engine.message_context(
                    result["session_id"], result["position"], before=context, after=context
                )
                result["before"] = ctx["before"]
                result["after"] = ctx["after"]

    formatted = format_results(results, output_format)
    if formatted is not None:
        click.echo(formatted)
        return

    if output_format == "table":
        render_results_table(results)
    else:
        render_results(results)


@cli.command()
@click.argument("session_id")
@db_option
@source_option
@sessions_dir_option
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["rich", "json"], case_sensitive=False),
    default="rich",
    show_default=True,
)
def timeline(
    session_id: str,
    db: str | None,
    source: str,
    sessions_dir: Path | None,
    output_format: str,
) -> None:
    """Show a session's conversation turns."""
    settings = _settings(db, source, sessions_dir)
    with SessionEngine(settings) as engine:
        _ensure_listed(engine, source)
        try:
            turns = engine.get_timeline(session_id)
        except KeyError as exc:
            raise click.ClickException(f"Unknown session: {session_id}") from exc

    if output_format == "json":
        click.echo(json.dumps([turn.to_dict() for turn in turns], ensure_ascii=True))
        return
    render_timeline(turns)


@cli.command()
@click.argument("source_file", type=click.File("r"), default="-")
@click.option("--rules", "rules_path", type=click.Path(path_type=Path), default=None)
def classify(source_file: TextIO, rules_path: Path | None) -> None:
    """Classify JSONL lines from FILE (or stdin), one JSON result per line."""
    settings = _settings(None, "all", None, rules_path=rules_path)
    for number, line in enumerate(source_file, start=1):
        if not line.strip():
            continue
        event = classify_line(line, settings.rules)
        result: dict[str, Any] = {"line": number}
        if event is None:
            result["dropped"] = True
        else:
            result.update(event.to_dict())
        click.echo(json.dumps(result))


@cli.command()
@db_option
def stats(db: str | None) -> None:
    """Show index statistics."""
    settings = _settings(db, "all", None)
    with SessionEngine(settings) as engine:
        data = engine.stats()
    click.echo(f"Sessions indexed: {data['session_count']}")
    click.echo(f"Total messages: {data['message_count']}")
    click.echo(f"Date range: {data['date_range']['start']} to {data['date_range']['end']}")
    for level, count in data["parse_levels"].items():
        click.echo(f"  {level}: {count}")
    for source, count in data["sources"].items():
        click.echo(f"  {source}: {count}")
    click.echo(f"Full-text index: {'on' if data['fts_enabled'] else 'off'}")


@cli.command()
def rules() -> None:
    """Print the default classifier rules as JSON (a starting point for --rules)."""
    click.echo(rules_to_json(DEFAULT_RULES))


def _settings(
    db: str | None,
    source: str,
    sessions_dir: Path | None,
    **overrides: Any,
) -> Settings:
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if db is not None:
        overrides["db_path"] = db
    settings = Settings.from_env(**overrides)
    if sessions_dir is not None:
        if source == "all":
            raise click.UsageError("--sessions-dir needs a specific --source")
        return settings.with_roots({source: [sessions_dir]})
    if source != "all":
        return settings.with_roots({source: settings.roots.get(source, [])})
    return settings


def _ensure_listed(engine: SessionEngine, source: str) -> None:
    """Give an empty (e.g. in-memory) index a metadata-level listing."""
    if engine.store.is_empty():
        engine.refresh(ParseLevel.METADATA, source=source)


def _echo_done(path: Path, session: Session | None, error: Exception | None) -> None:
    if session is not None:
        click.echo(f"  OK {session.session_id} ({session.parse_level.name.lower()})")
    else:
        click.echo(f"  FAILED {path}: {error}", err=True)


def _select_sessions(settings: Settings, source: str) -> list[SessionFile]:
    files = discover_session_files(settings.roots, source=source)
    if not files:
        click.echo(
            "No sessions discovered. Use --sessions-dir or set CODEX_SESSIONS_DIR, "
            "CLAUDE_CODE_PROJECTS_DIR or PI_SESSIONS_DIR if your sessions live elsewhere."
        )
        return []

    choices = [
        questionary.Choice(
            title=_format_session_choice(session_file),
            value=session_file,
            checked=True,
        )
        for session_file in files[:50]
    ]
    selected = questionary.checkbox(
        "Select sessions to index (Space to toggle, Enter to confirm):",
        choices=choices,
    ).ask()
    return selected or []


def _format_session_choice(session_file: SessionFile) -> str:
    age = _format_age(session_file.mtime)
    size_kb = session_file.size / 1024
    return f"{session_file.source_kind:<6}  {age:>8}  {size_kb:8.1f} KB  {session_file.path.name}"


def _format_age(modified: Any) -> str:
    if not isinstance(modified, (int, float)):
        return "unknown"
    now = datetime.now(tz=timezone.utc).timestamp()
    delta = max(now - modified, 0)
    if delta < 3600:
        return f"{int(delta // 60)}m ago"
    if delta < 86400:
        return f"{int(delta // 3600)}h ago"
    return f"{int(delta // 86400)}d ago"


def _normalize_since(since: str | None) -> str | None:
    if not since:
        return None
    normalized = normalize_iso(since)
    if normalized is None:
        raise click.BadParameter(f"Not an ISO date: {since}", param_hint="--since")
    return normalized
