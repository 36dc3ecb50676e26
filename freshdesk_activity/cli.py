"""
freshdesk-activity CLI - agent activity reports from Freshdesk.

Usage:
    freshdesk-activity whoami                                 # Check credentials
    freshdesk-activity report --from 2024-03-01 --to 2024-03-07
    freshdesk-activity active --group 24000009010             # Active ticket snapshot
    freshdesk-activity set-category 12345 Returns             # Update a ticket's category
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .augment import BatchAugmentor
from .cache import InMemoryCache, JsonFileCache, KeyValueCache
from .categories import CATEGORIES, status_label
from .config import Settings
from .errors import FreshdeskError
from .freshdesk_client import FreshdeskClient
from .logging_utils import DebugLogBuffer, attach_debug_buffer, configure_safe_logging
from .models import ActivityReport
from .report import ReportBuilder

logger = logging.getLogger(__name__)

RECENT_WARNINGS = 10


def _build_cache(settings: Settings, cache_dir: Optional[str]) -> KeyValueCache:
    directory = Path(cache_dir) if cache_dir else settings.cache_dir
    if directory:
        return JsonFileCache(directory)
    return InMemoryCache()


def _print_progress(done: int, total: int, label: str) -> None:
    if total:
        print(f"{label} ({done}/{total})...", file=sys.stderr)
    else:
        print(label, file=sys.stderr)  # stage message


def _print_recent_warnings(buffer: DebugLogBuffer, limit: int = RECENT_WARNINGS) -> None:
    entries = [e for e in buffer.get_logs() if e.level in ("warning", "error")][:limit]
    if not entries:
        return
    print("\nRecent warnings (newest first):", file=sys.stderr)
    for entry in entries:
        print(f"  {entry.timestamp} [{entry.context}] {entry.message}", file=sys.stderr)


def format_report(report: ActivityReport) -> str:
    """Plain-text rendering of a report for the terminal."""
    lines = [
        f"\n# Agent Activity {report.date_from} to {report.date_to}\n",
        f"{'Agent':<28} {'Tickets':>7} {'Resp':>5} {'Act':>5} {'Closed':>6} {'Share':>7}  Estimated time",
        "-" * 90,
    ]
    for agent in report.agent_summary:
        lines.append(
            f"{agent.agent_name[:28]:<28} {agent.ticket_count:>7} {agent.total_responses:>5} "
            f"{agent.total_actions:>5} {agent.total_closed:>6} {agent.activity_ratio:>7}  "
            f"{agent.estimated_time_range}"
        )
    if not report.agent_summary:
        lines.append("No agent activity in this period.")

    stats = report.ticket_stats
    prev = report.prev_ticket_stats
    lines += [
        "",
        "## Tickets",
        f"  Created:            {stats.created:>5}  (prev week {prev.created})",
        f"  Reopened:           {stats.reopened:>5}  (prev week {prev.reopened})",
        f"  Closed:             {stats.closed:>5}  (prev week {prev.closed})",
        f"  Worked:             {stats.worked:>5}  (prev week {prev.worked})",
        f"  Customer responded: {stats.customer_responded:>5}",
        f"  Active at start:    {report.tickets_at_period_start_count:>5}",
        f"  Active now:         {report.tickets_at_period_end_count:>5}",
        "",
        "## Active tickets by group",
    ]
    for group in report.group_stats.tickets_at_period_end:
        lines.append(f"  {group.group_name:<30} {group.count:>5}  {group.percent}")
    lines.append("")
    return "\n".join(lines)


async def _run_report(args, settings: Settings) -> ActivityReport:
    cache = _build_cache(settings, args.cache_dir)
    async with FreshdeskClient(settings) as client:
        augmentor = BatchAugmentor(client, cache, batch_size=settings.batch_size)
        builder = ReportBuilder(client, augmentor, settings, progress=None if args.json else _print_progress)
        return await builder.build(args.date_from, args.date_to)


def cmd_report(args, settings: Settings) -> int:
    """Generate an agent activity report."""
    report = asyncio.run(_run_report(args, settings))
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        print(format_report(report))
    return 0


async def _run_active(args, settings: Settings):
    async with FreshdeskClient(settings) as client:
        return await client.get_active_tickets(group_ids=args.group or None)


def cmd_active(args, settings: Settings) -> int:
    """Show the active ticket snapshot."""
    active = asyncio.run(_run_active(args, settings))
    if args.json:
        print(json.dumps({"total": active.total, "tickets": [t.id for t in active.tickets]}, indent=2))
        return 0

    print(f"\n{active.total} active tickets ({len(active.tickets)} fetched)\n")
    for ticket in active.tickets[: args.limit]:
        print(f"  #{ticket.id:<10} {status_label(ticket.status):<24} {ticket.subject[:60]}")
    print()
    return 0


def cmd_whoami(args, settings: Settings) -> int:
    """Verify credentials."""

    async def run():
        async with FreshdeskClient(settings) as client:
            return await client.get_authenticated_agent()

    agent = asyncio.run(run())
    print(f"Connected to {settings.api_base_url} as {agent.name} <{agent.email}> (id {agent.id})")
    return 0


def cmd_set_category(args, settings: Settings) -> int:
    """Update a ticket's category custom field."""

    async def run():
        async with FreshdeskClient(settings) as client:
            return await client.update_ticket_category(args.ticket_id, args.category)

    ticket = asyncio.run(run())
    print(f"Ticket #{ticket.id} category set to {args.category}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="freshdesk-activity",
        description="Freshdesk agent activity reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  freshdesk-activity whoami
  freshdesk-activity report --from 2024-03-01 --to 2024-03-07
  freshdesk-activity report --from 2024-03-01 --to 2024-03-01 --json > report.json
  freshdesk-activity active --group 24000009010 --group 24000009052
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # report
    p_report = subparsers.add_parser("report", help="Agent activity report for a date range")
    p_report.add_argument("--from", dest="date_from", required=True, help="First day (YYYY-MM-DD)")
    p_report.add_argument("--to", dest="date_to", required=True, help="Last day, inclusive (YYYY-MM-DD)")
    p_report.add_argument("--json", action="store_true", help="Print the report as JSON")
    p_report.add_argument("--cache-dir", help="Conversation cache directory (default: in-memory)")
    p_report.set_defaults(func=cmd_report)

    # active
    p_active = subparsers.add_parser("active", help="Active ticket snapshot")
    p_active.add_argument("-g", "--group", type=int, action="append", help="Group id (repeatable)")
    p_active.add_argument("-l", "--limit", type=int, default=20, help="Tickets to list")
    p_active.add_argument("--json", action="store_true", help="Print as JSON")
    p_active.set_defaults(func=cmd_active)

    # whoami
    p_whoami = subparsers.add_parser("whoami", help="Check the API connection")
    p_whoami.set_defaults(func=cmd_whoami)

    # set-category
    p_category = subparsers.add_parser("set-category", help="Set a ticket's category")
    p_category.add_argument("ticket_id", type=int, help="Ticket id")
    p_category.add_argument("category", choices=CATEGORIES, help="Category")
    p_category.set_defaults(func=cmd_set_category)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_safe_logging(logging.DEBUG if args.verbose else logging.WARNING)
    debug_buffer = None
    if args.verbose:
        debug_buffer = attach_debug_buffer()
        debug_buffer.clear()

    try:
        settings = Settings.from_env()
        return args.func(args, settings)
    except FreshdeskError as e:
        print(f"Error: {e}", file=sys.stderr)
        if debug_buffer is not None:
            _print_recent_warnings(debug_buffer)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
