"""
Report orchestration and ticket-level metrics.

ReportBuilder composes one ActivityReport for a window of whole days:

    window          [from 00:00:00, to 23:59:59] at the display offset
    previous week   the same window shifted back 7 days
    last 24h        the 24 hours before the window starts

Ticket metrics per window:
- created: created_at in the window
- reopened: stats.reopened_at in the window
- closed: Resolved/Closed with closure time in the window
- worked: still open (not Resolved/Closed/Reopened) with agent activity in the window
- customer_responded: worked tickets with a public customer message in the window
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Collection, Iterable, Mapping, Optional, Sequence, Union

from .activity import calculate_all_agent_activity, format_percent, is_system_conversation
from .augment import BatchAugmentor, ProgressCallback
from .categories import ACTIVE_TICKET_STATUSES, FALLBACK_GROUP_NAME, STATUS_REOPENED, clean_group_map, is_closed_status
from .config import Settings
from .models import (
    ActivityReport,
    Agent,
    Conversation,
    GroupStatsByMetric,
    Ticket,
    TicketCounts,
    TicketGroupStat,
    TicketWithConversations,
)
from .time_utils import report_window

logger = logging.getLogger(__name__)

NO_TYPE = "No Type"


def _in_window(moment: Optional[datetime], start: datetime, end: datetime) -> bool:
    return moment is not None and start <= moment <= end


def _is_agent_message(conversation: Conversation, agent_ids: Optional[Collection[int]]) -> bool:
    if agent_ids is None:
        return bool(conversation.user_id)
    return conversation.user_id in agent_ids


def is_created_in(ticket: Ticket, start: datetime, end: datetime) -> bool:
    return _in_window(ticket.created_at, start, end)


def is_reopened_in(ticket: Ticket, start: datetime, end: datetime) -> bool:
    return _in_window(ticket.reopened_at, start, end)


def is_closed_in(ticket: Ticket, start: datetime, end: datetime) -> bool:
    return is_closed_status(ticket.status) and _in_window(ticket.closure_time, start, end)


def is_worked_in(
    ticket: TicketWithConversations,
    start: datetime,
    end: datetime,
    agent_ids: Optional[Collection[int]] = None,
) -> bool:
    """
    Open ticket with at least one non-automated agent message in the window.

    Without ``agent_ids`` any authored message counts, as the API leaves
    ``user_id`` empty only for some system-generated entries.
    """
    if is_closed_status(ticket.status) or ticket.status == STATUS_REOPENED:
        return False
    return any(
        _in_window(c.created_at, start, end)
        and _is_agent_message(c, agent_ids)
        and not is_system_conversation(c)
        for c in ticket.conversations
    )


def has_customer_response_in(
    ticket: TicketWithConversations,
    start: datetime,
    end: datetime,
    agent_ids: Optional[Collection[int]] = None,
) -> bool:
    """Public message from someone other than an agent inside the window."""
    for c in ticket.conversations:
        if c.private or not _in_window(c.created_at, start, end):
            continue
        if agent_ids is None:
            if not c.user_id:
                return True
        elif c.user_id not in agent_ids:
            return True
    return False


@dataclass
class TicketBuckets:
    """Tickets of one window split by metric. A ticket can sit in several buckets."""

    created: list = field(default_factory=list)
    reopened: list = field(default_factory=list)
    closed: list = field(default_factory=list)
    worked: list = field(default_factory=list)
    customer_responded: list = field(default_factory=list)

    def counts(self) -> TicketCounts:
        return TicketCounts(
            created=len(self.created),
            reopened=len(self.reopened),
            closed=len(self.closed),
            worked=len(self.worked),
            customer_responded=len(self.customer_responded),
        )

    def ticket_ids(self) -> dict[str, list[int]]:
        return {
            "created": [t.id for t in self.created],
            "reopened": [t.id for t in self.reopened],
            "closed": [t.id for t in self.closed],
            "worked": [t.id for t in self.worked],
            "customer_responded": [t.id for t in self.customer_responded],
        }


def bucket_tickets(
    tickets: Iterable[TicketWithConversations],
    start: datetime,
    end: datetime,
    agent_ids: Optional[Collection[int]] = None,
) -> TicketBuckets:
    buckets = TicketBuckets()
    for ticket in tickets:
        if is_created_in(ticket, start, end):
            buckets.created.append(ticket)
        if is_reopened_in(ticket, start, end):
            buckets.reopened.append(ticket)
        if is_closed_in(ticket, start, end):
            buckets.closed.append(ticket)
        if is_worked_in(ticket, start, end, agent_ids):
            buckets.worked.append(ticket)
            if has_customer_response_in(ticket, start, end, agent_ids):
                buckets.customer_responded.append(ticket)
    return buckets


def compute_ticket_stats(
    tickets: Iterable[TicketWithConversations],
    start: datetime,
    end: datetime,
    agent_ids: Optional[Collection[int]] = None,
) -> TicketCounts:
    return bucket_tickets(tickets, start, end, agent_ids).counts()


def compute_group_stats(tickets: Iterable[Ticket], group_map: Mapping[int, str]) -> list[TicketGroupStat]:
    """Ticket count, share and ticket-type mix per group, largest group first."""
    counts: dict[Optional[int], int] = defaultdict(int)
    types: dict[Optional[int], dict[str, int]] = defaultdict(lambda: defaultdict(int))
    total = 0
    for ticket in tickets:
        counts[ticket.group_id] += 1
        types[ticket.group_id][ticket.type or NO_TYPE] += 1
        total += 1

    stats = [
        TicketGroupStat(
            group_id=group_id,
            group_name=group_map.get(group_id) or FALLBACK_GROUP_NAME,
            count=count,
            percent=format_percent(count, total),
            raw_percent=(count / total * 100) if total else 0.0,
            type_distribution=dict(types[group_id]),
        )
        for group_id, count in counts.items()
    ]
    stats.sort(key=lambda s: s.count, reverse=True)
    return stats


def compute_period_start_snapshot(
    active: Iterable[Ticket],
    created: Iterable[Ticket],
    reopened: Iterable[Ticket],
    closed: Iterable[Ticket],
    group_map: Mapping[int, str],
) -> list[TicketGroupStat]:
    """
    Estimate per-group open tickets at the start of the window.

    Works backwards from the current active snapshot: tickets created or
    reopened during the window were not open yet, tickets closed during it
    were. Negative estimates are floored at 0 and empty groups dropped.
    """
    counts: dict[Optional[int], int] = defaultdict(int)
    for ticket in active:
        counts[ticket.group_id] += 1
    for ticket in created:
        counts[ticket.group_id] -= 1
    for ticket in reopened:
        counts[ticket.group_id] -= 1
    for ticket in closed:
        counts[ticket.group_id] += 1

    positive = {group_id: count for group_id, count in counts.items() if count > 0}
    total = sum(positive.values())
    stats = [
        TicketGroupStat(
            group_id=group_id,
            group_name=group_map.get(group_id) or FALLBACK_GROUP_NAME,
            count=count,
            percent=format_percent(count, total),
            raw_percent=(count / total * 100) if total else 0.0,
        )
        for group_id, count in positive.items()
    ]
    stats.sort(key=lambda s: s.count, reverse=True)
    return stats


def select_agent_tickets(
    tickets: Iterable[TicketWithConversations],
    agent_id: int,
    start: datetime,
    end: datetime,
) -> list[TicketWithConversations]:
    """Tickets an agent wrote on in the window, or closed as responder in the window."""
    selected = []
    for ticket in tickets:
        has_activity = any(
            c.user_id == agent_id and _in_window(c.created_at, start, end) for c in ticket.conversations
        )
        closed_by_agent = ticket.responder_id == agent_id and is_closed_in(ticket, start, end)
        if has_activity or closed_by_agent:
            selected.append(ticket)
    return selected


class ReportBuilder:
    """Fetches, augments and aggregates everything one ActivityReport needs."""

    def __init__(
        self,
        client,
        augmentor: BatchAugmentor,
        settings: Optional[Settings] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.client = client
        self.augmentor = augmentor
        self.settings = settings or client.settings
        self.progress = progress

    def _report_progress(self, message: str) -> None:
        logger.info(message)
        if self.progress:
            self.progress(0, 0, message)

    async def load_directory(self) -> tuple[list[Agent], dict[int, str]]:
        """All agents and the cleaned group map."""
        agents, groups = await asyncio.gather(self.client.get_agents(), self.client.get_groups())
        return agents, clean_group_map(groups)

    def reported_agents(self, agents: Sequence[Agent]) -> dict[int, str]:
        """Agent id -> name for agents on the allowlist (all agents when it is empty)."""
        return {a.id: a.name for a in agents if self.settings.is_agent_allowed(a.email)}

    async def build(
        self,
        date_from: Union[str, date],
        date_to: Union[str, date],
    ) -> ActivityReport:
        offset = self.settings.display_offset
        start, end = report_window(date_from, date_to, offset)
        prev_start, prev_end = start - timedelta(days=7), end - timedelta(days=7)
        lookback_start = start - timedelta(hours=24)

        self._report_progress("Loading agents and groups...")
        agents, group_map = await self.load_directory()
        agent_map = self.reported_agents(agents)
        all_agent_ids = {a.id for a in agents}
        logger.info(f"Reporting on {len(agent_map)} of {len(agents)} agents")

        self._report_progress("Fetching ticket data...")
        current_raw, prev_raw, lookback_raw = await asyncio.gather(
            self.client.get_tickets_updated_in_period(start, end),
            self.client.get_tickets_updated_in_period(prev_start, prev_end),
            self.client.get_tickets_updated_in_period(lookback_start, start),
        )

        current = await self.augmentor.augment(current_raw, agent_map, self.progress, "Analyzing current period")
        previous = await self.augmentor.augment(prev_raw, agent_map, self.progress, "Analyzing previous period")
        lookback = await self.augmentor.augment(lookback_raw, agent_map, self.progress, "Analyzing 24h lookback")

        buckets = bucket_tickets(current, start, end, all_agent_ids)
        prev_stats = compute_ticket_stats(previous, prev_start, prev_end, all_agent_ids)
        lookback_stats = compute_ticket_stats(lookback, lookback_start, start, all_agent_ids)

        self._report_progress("Calculating active ticket snapshots...")
        active = await self.client.get_active_tickets(ACTIVE_TICKET_STATUSES, list(group_map))

        period_start = compute_period_start_snapshot(
            active.tickets, buckets.created, buckets.reopened, buckets.closed, group_map
        )
        agent_summary = calculate_all_agent_activity(current, agent_map, start, end, group_map, offset)

        ticket_ids = buckets.ticket_ids()
        ticket_ids["active"] = [t.id for t in active.tickets]

        return ActivityReport(
            date_from=str(date_from),
            date_to=str(date_to),
            window_start=start,
            window_end=end,
            agent_summary=agent_summary,
            ticket_stats=buckets.counts(),
            prev_ticket_stats=prev_stats,
            last_24h_ticket_stats=lookback_stats,
            group_stats=GroupStatsByMetric(
                created=compute_group_stats(buckets.created, group_map),
                reopened=compute_group_stats(buckets.reopened, group_map),
                closed=compute_group_stats(buckets.closed, group_map),
                worked=compute_group_stats(buckets.worked, group_map),
                tickets_at_period_start=period_start,
                tickets_at_period_end=compute_group_stats(active.tickets, group_map),
            ),
            tickets_at_period_start_count=sum(s.count for s in period_start),
            tickets_at_period_end_count=active.total,
            tickets_closed_and_created_in_period=sum(1 for t in buckets.closed if t.created_at >= start),
            ticket_ids=ticket_ids,
            report_generated_at=datetime.now(timezone.utc),
        )
