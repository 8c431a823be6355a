#!/usr/bin/env python3
"""Print the project briefing an agent receives at session start.

Usage:
  python -m rundown.scripts.briefing
  python -m rundown.scripts.briefing --scope auth --since 2026-01-01
  python -m rundown.scripts.briefing --json
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from rundown import config
from rundown.db import connection, migrations
from rundown.models import Briefing, BriefingOptions
from rundown.project import ProjectIdentity
from rundown.services.distill import build_briefing


def format_briefing(briefing: Briefing) -> str:
    ctx = briefing.context
    lines = ["=== Rundown Briefing ===", "", f"Project: {ctx.project}"]
    if ctx.focus:
        lines.append(f"Focus: {ctx.focus}")
    lines.extend([f"Updated: {ctx.last_updated}", ""])

    if ctx.decisions:
        lines.append("--- Recent Decisions ---")
        for d in ctx.decisions:
            lines.append(f"  [{d.status}] {d.what}")
            lines.append(f"    Why: {d.why} ({d.when})")
            if d.open_items:
                lines.append(f"    Open: {', '.join(d.open_items)}")
        lines.append("")

    if ctx.active_issues:
        lines.append("--- Active Issues ---")
        for issue in ctx.active_issues:
            lines.append(f"  [{issue.priority.upper()}] {issue.id}: {issue.summary} ({issue.reports} reports)")
        lines.append("")

    if ctx.user_signals:
        lines.append("--- User Signals ---")
        for signal in ctx.user_signals:
            lines.append(f"  {signal.theme} x{signal.count} ({signal.period}): {signal.summary}")
        lines.append("")

    if ctx.codebase_notes:
        lines.append("--- Codebase Notes ---")
        for note in ctx.codebase_notes:
            lines.append(f"  [{note.priority}] {note.area or note.file}: {note.note}")
        lines.append("")

    a = ctx.recent_activity
    lines.append(f"--- Activity ({a.period}) ---")
    lines.append(f"  Issues: {a.issues_opened} opened, {a.issues_closed} closed")
    lines.append(f"  PRs: {a.prs_opened} opened, {a.prs_merged} merged")
    lines.append(f"  Discord: {a.discord_threads} threads")
    lines.append("")

    last = briefing.last_session
    if last:
        lines.append("--- Last Session ---")
        lines.append(f"  Scope: {', '.join(last.scope)}")
        if last.summary:
            lines.append(f"  Summary: {last.summary}")
        if last.open_items:
            lines.append("  Open Items:")
            lines.extend(f"    - {item}" for item in last.open_items)
        lines.append("")
    return "\n".join(lines)


async def _run(scope: str | None, since: str | None, project: str | None, as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        identity = ProjectIdentity(override=config.PROJECT_ID)
        options = BriefingOptions(scope=scope, since=since, project=project)
        try:
            briefing = await build_briefing(db, options, identity=identity)
        except ValueError as e:
            print(f"[ERROR] {e}")
            return 2
    finally:
        await connection.close_connection()

    if as_json:
        payload = {
            "context": briefing.context.model_dump(),
            "lastSession": briefing.last_session.model_dump() if briefing.last_session else None,
        }
        print(json.dumps(payload, indent=2))
    else:
        print(format_briefing(briefing))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a project briefing")
    parser.add_argument("--scope", default="", help="Free-text focus area (e.g. auth)")
    parser.add_argument("--since", default="", help="ISO date for the start of the lookback window")
    parser.add_argument("--project", default="", help="Project ID (default: detected)")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING)
    return asyncio.run(_run(args.scope or None, args.since or None, args.project or None, args.json))


if __name__ == "__main__":
    raise SystemExit(main())
