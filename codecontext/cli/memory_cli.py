#!/usr/bin/env python3
"""
Memory CLI Tool
===============

Command-line interface for inspecting and managing a project's memory.

Usage:
    codecontext-memory stats [--project PATH]
    codecontext-memory recall PROMPT [--project PATH]
    codecontext-memory search QUERY [--project PATH]
    codecontext-memory decisions [--project PATH]
    codecontext-memory clear [--yes] [--project PATH]
    codecontext-memory scan [--project PATH]
    codecontext-memory analytics --team TEAM [--project PATH]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.markup import escape

from codecontext.analytics import AnalyticsEngine
from codecontext.errors import MemoryEngineError
from codecontext.output import (
    console,
    confirm,
    create_table,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_panel,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    spinner,
)
from codecontext.project_memory import ProjectMemoryStore
from codecontext.recall import RecallEngine
from codecontext.team_memory import TeamMemoryStore

load_dotenv()

PREVIEW_LENGTH = 80


def get_project_dir(args) -> Path:
    """Get project directory from args or current directory."""
    if getattr(args, "project", None):
        return Path(args.project)
    return Path.cwd()


def _preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    """Single-line, truncated and markup-escaped rendering of stored text."""
    text = " ".join((text or "").split())
    text = text if len(text) <= length else text[:length - 3] + "..."
    return escape(text)


async def _open_store(args) -> ProjectMemoryStore:
    store = ProjectMemoryStore(get_project_dir(args))
    await store.initialize()
    return store


async def cmd_stats(args):
    """Show memory statistics."""
    store = await _open_store(args)
    try:
        with spinner("Reading memory..."):
            stats = await store.get_statistics()
    finally:
        await store.close()

    print_key_value_table({
        "Conversations": stats.conversation_count,
        "Messages": stats.message_count,
        "Decisions": stats.decision_count,
        "Files touched": stats.file_count,
        "Patterns": stats.pattern_count,
        "Last activity": stats.last_activity.isoformat() if stats.last_activity else "never",
        "Database size": stats.database_size,
    }, title="Memory Statistics")


async def cmd_recall(args):
    """Recall memory fragments for a prompt."""
    store = await _open_store(args)
    try:
        with spinner("Recalling..."):
            fragments = await RecallEngine(store).recall(args.prompt)
    finally:
        await store.close()

    if not fragments:
        print_muted("Nothing recalled.")
        return

    print_header(f"Recall: {escape(args.prompt)}")
    table = create_table(columns=["Kind", "Content", "Detail"])
    for fragment in fragments:
        detail = fragment.rationale or fragment.context or fragment.ai_assistant or ""
        table.add_row(
            f"[cc.kind.{fragment.kind}]{fragment.kind}[/]",
            _preview(fragment.content),
            f"[cc.muted]{_preview(detail, 40)}[/]",
        )
    print_table(table)


async def cmd_search(args):
    """Search conversations."""
    store = await _open_store(args)
    try:
        conversations = await store.search_conversations(args.query)
    finally:
        await store.close()

    if not conversations:
        print_muted(f"No conversations match '{escape(args.query)}'.")
        return

    print_header(f"Conversations matching '{escape(args.query)}'")
    table = create_table(columns=["When", "Assistant", "Messages", "First message"])
    for conversation in conversations:
        first = conversation.messages[0].content if conversation.messages else ""
        table.add_row(
            f"[cc.timestamp]{conversation.timestamp:%Y-%m-%d %H:%M}[/]",
            escape(conversation.ai_assistant),
            f"[cc.number]{len(conversation.messages)}[/]",
            _preview(first, 60),
        )
    print_table(table)


async def cmd_decisions(args):
    """List architectural decisions."""
    store = await _open_store(args)
    try:
        decisions = await store.get_decisions()
    finally:
        await store.close()

    if not decisions:
        print_muted("No architectural decisions recorded.")
        return

    print_header("Architectural Decisions")
    for decision in decisions:
        body = escape(decision.rationale) if decision.rationale else "[cc.muted]no rationale[/]"
        if decision.alternatives:
            body += f"\n[cc.key]Alternatives:[/] {escape(', '.join(decision.alternatives))}"
        if decision.files_affected:
            body += f"\n[cc.key]Files:[/] [cc.path]{escape(', '.join(decision.files_affected))}[/]"
        print_panel(
            body,
            title=f"{escape(decision.decision)}  [cc.timestamp]{decision.timestamp:%Y-%m-%d}[/]",
        )


async def cmd_clear(args):
    """Delete every memory row for the project."""
    project_dir = get_project_dir(args)
    if not args.yes and not confirm(f"Erase all memory for {escape(str(project_dir))}?"):
        print_info("Aborted.")
        return

    store = await _open_store(args)
    try:
        await store.clear_all_memory()
    finally:
        await store.close()
    print_success("Project memory cleared.")


async def cmd_scan(args):
    """Record every source file in the project as created."""
    store = await _open_store(args)
    try:
        with spinner("Scanning project files..."):
            count = await store.perform_initial_scan()
    finally:
        await store.close()
    print_success(f"Tracked {count} files.")


async def cmd_analytics(args):
    """Show team analytics."""
    store = TeamMemoryStore(args.team, get_project_dir(args))
    await store.initialize()
    try:
        engine = AnalyticsEngine(store)
        with spinner("Computing analytics..."):
            overview = await engine.get_team_overview()
            analytics = await engine.get_team_analytics()
            alerts = await engine.generate_alerts()
    finally:
        await store.close()

    print_key_value_table({
        "Members": overview.member_count,
        "Memories": analytics.total_memories,
        "Active (30d)": analytics.active_memories,
        "Growth": f"{analytics.memory_growth_rate:+.1f}%",
        "Productivity": f"{analytics.team_productivity_score:.1f}",
        "Knowledge health": f"{analytics.knowledge_health_score:.1f}",
        "Collaboration": f"{analytics.collaboration_index:.1f}",
        "Utilization": f"{analytics.memory_utilization_rate:.1f}",
        "Team score": f"{overview.team_score} ({overview.trend})",
    }, title=f"Team {overview.team_id}")

    if analytics.top_contributors:
        table = create_table(columns=["Member", "Created", "Used", "Avg success"])
        for contributor in analytics.top_contributors:
            table.add_row(
                escape(contributor.name),
                f"[cc.number]{contributor.memories_created}[/]",
                f"[cc.number]{contributor.memories_used}[/]",
                f"{contributor.success_score:.2f}",
            )
        print_table(table)

    for alert in alerts:
        print_warning(f"{alert.title}: {alert.message}")


def main():
    parser = argparse.ArgumentParser(
        description="Memory CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show what the project remembers
    codecontext-memory stats

    # Recall context for a prompt
    codecontext-memory recall "why does the auth token expire?"

    # Reset the project's memory without prompting
    codecontext-memory clear --yes

    # Team dashboard numbers
    codecontext-memory analytics --team platform
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    stats_parser = subparsers.add_parser("stats", help="Show memory statistics")
    stats_parser.add_argument("--project", "-p", help="Project directory")

    recall_parser = subparsers.add_parser("recall", help="Recall memory for a prompt")
    recall_parser.add_argument("prompt", help="Free-text prompt")
    recall_parser.add_argument("--project", "-p", help="Project directory")

    search_parser = subparsers.add_parser("search", help="Search conversations")
    search_parser.add_argument("query", help="Case-insensitive substring")
    search_parser.add_argument("--project", "-p", help="Project directory")

    decisions_parser = subparsers.add_parser("decisions", help="List architectural decisions")
    decisions_parser.add_argument("--project", "-p", help="Project directory")

    clear_parser = subparsers.add_parser("clear", help="Erase all project memory")
    clear_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    clear_parser.add_argument("--project", "-p", help="Project directory")

    scan_parser = subparsers.add_parser("scan", help="Track existing source files")
    scan_parser.add_argument("--project", "-p", help="Project directory")

    analytics_parser = subparsers.add_parser("analytics", help="Show team analytics")
    analytics_parser.add_argument("--team", "-t", required=True, help="Team id")
    analytics_parser.add_argument("--project", "-p", help="Project directory")

    args = parser.parse_args()

    if not args.command:
        print_banner(version="Memory CLI", subtitle="Inspect and manage project memory")
        console.print()
        parser.print_help()
        sys.exit(1)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    commands = {
        "stats": cmd_stats,
        "recall": cmd_recall,
        "search": cmd_search,
        "decisions": cmd_decisions,
        "clear": cmd_clear,
        "scan": cmd_scan,
        "analytics": cmd_analytics,
    }

    try:
        asyncio.run(commands[args.command](args))
    except MemoryEngineError as e:
        print_error(escape(str(e)))
        sys.exit(1)


if __name__ == "__main__":
    main()
