"""
Per-agent activity aggregation.

Turns augmented tickets into one AgentActivitySummary per agent for a report
window. Two passes over the tickets:

1. Activity: every conversation in the window authored by a known agent is a
   response (public) or an action (private note) and adds a minute estimate.
   The ticket joins the agent's touched set.
2. Closures: a Resolved/Closed ticket whose closure time is in the window is
   credited to its responder, but only if that responder touched it in pass 1.
   Automations assign and close tickets without any agent involvement; those
   closures are not anyone's work.

Minute estimates are heuristics, kept as module constants below. Day buckets
use a single fixed display offset (UTC+2 unless configured otherwise).
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

from .categories import FALLBACK_GROUP_NAME, is_closed_status
from .models import (
    AgentActivitySummary,
    AgentGroupStat,
    Conversation,
    DailyAgentStats,
    TicketWithConversations,
)
from .time_utils import DEFAULT_DISPLAY_OFFSET, display_date, ensure_aware, format_time_range

logger = logging.getLogger(__name__)

# Minute estimates (min, max) per activity kind
SPAM_NOTE_MINUTES = (1, 2)
PRIVATE_NOTE_MINUTES = (2, 3)
SHORT_REPLY_MINUTES = (3, 4)
LONG_REPLY_MINUTES = (5, 7)
CLOSURE_MINUTES = (1, 2)

SHORT_REPLY_CHARS = 50
SPAM_MARKER = "marked as spam"

# Known false-positive source: any agent message mentioning "system" is ignored.
SYSTEM_MARKER = "system"

# Upper estimate may not exceed this multiple of the lower one
MAX_ESTIMATE_SPREAD = 1.5


def is_system_conversation(conversation: Conversation) -> bool:
    return SYSTEM_MARKER in (conversation.body_text or "").lower()


def estimate_conversation_minutes(conversation: Conversation) -> tuple[int, int]:
    body = (conversation.body_text or "").strip().lower()
    if conversation.private:
        return SPAM_NOTE_MINUTES if SPAM_MARKER in body else PRIVATE_NOTE_MINUTES
    return SHORT_REPLY_MINUTES if len(body) < SHORT_REPLY_CHARS else LONG_REPLY_MINUTES


def constrain_time_estimate(min_minutes: int, max_minutes: int) -> tuple[int, int]:
    """Cap max at ceil(1.5 * min), and never let it fall below min."""
    if max_minutes > min_minutes * MAX_ESTIMATE_SPREAD:
        max_minutes = math.ceil(min_minutes * MAX_ESTIMATE_SPREAD)
    if max_minutes < min_minutes:
        max_minutes = min_minutes
    return min_minutes, max_minutes


def format_percent(part: int, whole: int) -> str:
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.1f}%"


@dataclass
class _Tally:
    responses: int = 0
    actions: int = 0
    closed: int = 0
    min_minutes: int = 0
    max_minutes: int = 0

    def add_minutes(self, minutes: tuple[int, int]) -> None:
        self.min_minutes += minutes[0]
        self.max_minutes += minutes[1]


@dataclass
class _GroupTally:
    worked: int = 0
    closed: int = 0


@dataclass
class _AgentAccumulator:
    name: str
    ticket_ids: set = field(default_factory=set)
    totals: _Tally = field(default_factory=_Tally)
    daily: dict = field(default_factory=lambda: defaultdict(_Tally))
    groups: dict = field(default_factory=lambda: defaultdict(_GroupTally))


def _in_window(moment: datetime, start: datetime, end: datetime) -> bool:
    return start <= moment <= end


def calculate_all_agent_activity(
    tickets: Iterable[TicketWithConversations],
    agent_map: Mapping[int, str],
    start: datetime,
    end: datetime,
    group_map: Optional[Mapping[int, str]] = None,
    display_offset: timedelta = DEFAULT_DISPLAY_OFFSET,
) -> list[AgentActivitySummary]:
    """
    Aggregate agent activity for the inclusive window [start, end].

    Args:
        tickets: Tickets with their conversation threads attached
        agent_map: Agent id -> display name. Authors not in the map are ignored.
        start: Window start (aware; naive is read as UTC)
        end: Window end, inclusive
        group_map: Group id -> cleaned group name
        display_offset: Offset used for per-day buckets

    Returns:
        Agents with at least one touched ticket or closure, busiest first.
    """
    start = ensure_aware(start)
    end = ensure_aware(end)
    group_map = group_map or {}
    tickets = list(tickets)

    agents = {agent_id: _AgentAccumulator(name=(name or "").upper()) for agent_id, name in agent_map.items()}

    # Pass 1: activity
    for ticket in tickets:
        touched_by = set()
        for conversation in ticket.conversations:
            if not _in_window(conversation.created_at, start, end):
                continue
            agent = agents.get(conversation.user_id)
            if agent is None or is_system_conversation(conversation):
                continue

            touched_by.add(conversation.user_id)
            agent.ticket_ids.add(ticket.id)

            day = agent.daily[display_date(conversation.created_at, display_offset)]
            if conversation.private:
                agent.totals.actions += 1
                day.actions += 1
            else:
                agent.totals.responses += 1
                day.responses += 1

            minutes = estimate_conversation_minutes(conversation)
            agent.totals.add_minutes(minutes)
            day.add_minutes(minutes)

        for agent_id in touched_by:
            agents[agent_id].groups[ticket.group_id].worked += 1

    # Pass 2: closures
    for ticket in tickets:
        if not is_closed_status(ticket.status):
            continue
        closed_at = ticket.closure_time
        if not _in_window(closed_at, start, end):
            continue
        agent = agents.get(ticket.responder_id)
        if agent is None:
            continue
        if ticket.id not in agent.ticket_ids:
            logger.debug(f"Ticket {ticket.id} closed without activity from responder {ticket.responder_id}")
            continue

        day = agent.daily[display_date(closed_at, display_offset)]
        agent.totals.closed += 1
        day.closed += 1
        agent.totals.add_minutes(CLOSURE_MINUTES)
        day.add_minutes(CLOSURE_MINUTES)
        agent.groups[ticket.group_id].closed += 1

    total_touched = sum(len(agent.ticket_ids) for agent in agents.values())

    summaries = []
    for agent_id, agent in agents.items():
        if not agent.ticket_ids and agent.totals.closed == 0:
            continue
        summaries.append(_summarize(agent_id, agent, total_touched, group_map))

    summaries.sort(key=lambda s: s.ticket_count, reverse=True)
    return summaries


def _summarize(
    agent_id: int,
    agent: _AgentAccumulator,
    total_touched: int,
    group_map: Mapping[int, str],
) -> AgentActivitySummary:
    daily_breakdown = []
    for date_str in sorted(agent.daily):
        tally = agent.daily[date_str]
        day_min, day_max = constrain_time_estimate(tally.min_minutes, tally.max_minutes)
        daily_breakdown.append(DailyAgentStats(
            date=date_str,
            total_responses=tally.responses,
            total_actions=tally.actions,
            total_closed=tally.closed,
            total_agent_activity=tally.responses + tally.actions,
            total_min=day_min,
            total_max=day_max,
            estimated_time_range=format_time_range(day_min, day_max),
        ))

    ticket_count = len(agent.ticket_ids)
    group_stats = [
        AgentGroupStat(
            group_name=group_map.get(group_id) or FALLBACK_GROUP_NAME,
            total=tally.worked + tally.closed,
            worked=tally.worked,
            closed=tally.closed,
            percent=format_percent(tally.worked, ticket_count),
        )
        for group_id, tally in agent.groups.items()
    ]
    group_stats.sort(key=lambda g: g.worked, reverse=True)

    total_min, total_max = constrain_time_estimate(agent.totals.min_minutes, agent.totals.max_minutes)
    return AgentActivitySummary(
        agent_id=agent_id,
        agent_name=agent.name,
        ticket_ids=sorted(agent.ticket_ids),
        ticket_count=ticket_count,
        total_responses=agent.totals.responses,
        total_actions=agent.totals.actions,
        total_closed=agent.totals.closed,
        total_agent_activity=agent.totals.responses + agent.totals.actions,
        total_min=total_min,
        total_max=total_max,
        estimated_time_range=format_time_range(total_min, total_max),
        activity_ratio=format_percent(ticket_count, total_touched),
        daily_breakdown=daily_breakdown,
        group_stats=group_stats,
    )
