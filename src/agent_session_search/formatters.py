from __future__ import annotations

import csv
import io
import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .timeline import ConversationTurn, TimelineEvent

ROLE_STYLES = {"user": "cyan", "assistant": "green", "info": "yellow"}


def format_results(results: list[dict[str, Any]], output_format: str) -> str | None:
    if output_format == "json":
        return json.dumps(results, ensure_ascii=True, default=str)
    if output_format == "csv":
        return _results_to_csv(results)
    return None


def render_results(results: list[dict[str, Any]]) -> None:
    console = Console()
    if not results:
        console.print("[dim]No matches.[/dim]")
        return
    for result in results:
        header = f"{result['session_id']} #{result['position']} | {result['role']}"
        if result.get("origin") == "raw_scan":
            header += " | unindexed"
        console.print(
            Panel(
                Text(result.get("snippet") or ""),
                title=header,
                subtitle=result.get("timestamp") or None,
                border_style=ROLE_STYLES.get(result["role"], "cyan"),
            )
        )


def render_results_table(results: list[dict[str, Any]]) -> None:
    console = Console()
    table = Table(title="Search Results")
    table.add_column("Session", style="cyan")
    table.add_column("Pos", justify="right")
    table.add_column("Role", style="magenta")
    table.add_column("Snippet", style="white")
    table.add_column("Score", style="green")

    for result in results:
        table.add_row(
            result.get("session_id", ""),
            str(result.get("position", "")),
            result.get("role", ""),
            Text((result.get("snippet") or "")[:80]),
            f"{result.get('score', 0.0):.3f}",
        )
    console.print(table)


def render_sessions(sessions: list[dict[str, Any]]) -> None:
    console = Console()
    table = Table(title="Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Level", style="magenta")
    table.add_column("Msgs", justify="right")
    table.add_column("Modified", style="green")
    table.add_column("Title", style="white")

    for session in sessions:
        messages = session.get("user_message_count", 0) + session.get("assistant_message_count", 0)
        table.add_row(
            session.get("session_id", ""),
            session.get("parse_level", ""),
            str(messages),
            session.get("last_modified_at") or "",
            Text((session.get("title") or session.get("cwd") or "")[:60]),
        )
    console.print(table)


def render_timeline(turns: list[ConversationTurn]) -> None:
    console = Console()
    for index, turn in enumerate(turns, start=1):
        if turn.user_message is not None:
            console.print(
                Panel(
                    Text(turn.user_message.text or ""),
                    title=f"Turn {index} | user",
                    subtitle=turn.timestamp or None,
                    border_style=ROLE_STYLES["user"],
                )
            )
        for event in turn.outputs:
            console.print(_event_panel(event))


def _event_panel(event: TimelineEvent) -> Panel:
    title = event.title or event.kind.value
    if event.repeat_count > 1:
        title += f" (x{event.repeat_count})"
    content = event.text or ""
    if len(content) > 500:
        content = f"{content[:500]}..."
    if event.attachments:
        content += "\n" + "\n".join(f"attachment: {item}" for item in event.attachments)
    return Panel(Text(content), title=title, border_style=ROLE_STYLES.get(event.actor, "cyan"))


def _results_to_csv(results: list[dict[str, Any]]) -> str:
    if not results:
        return ""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=results[0].keys())
    writer.writeheader()
    writer.writerows(results)
    return output.getvalue()
