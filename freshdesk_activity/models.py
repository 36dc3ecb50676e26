"""Pydantic models for Freshdesk wire data and activity report output."""

from datetime import datetime
from typing import Annotated, Any, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator

from .time_utils import ensure_aware

# Every timestamp becomes an aware instant; naive values are read as UTC.
Instant = Annotated[datetime, AfterValidator(ensure_aware)]


# ==================== WIRE MODELS ====================


class AgentContact(BaseModel):
    name: str = ""
    email: str = ""


class Agent(BaseModel):
    """Helpdesk agent. Only used as an id -> name lookup."""

    id: int
    contact: AgentContact = Field(default_factory=AgentContact)

    @property
    def name(self) -> str:
        return self.contact.name

    @property
    def email(self) -> str:
        return self.contact.email


class Group(BaseModel):
    id: int
    name: str = ""
    description: Optional[str] = ""


class Requester(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None


class TicketStats(BaseModel):
    reopened_at: Optional[Instant] = None
    resolved_at: Optional[Instant] = None
    closed_at: Optional[Instant] = None


class Ticket(BaseModel):
    """Freshdesk ticket. Read-only apart from the local category/agent_name annotations."""

    id: int
    requester_id: Optional[int] = None
    responder_id: Optional[int] = None
    group_id: Optional[int] = None
    subject: str = ""
    description_text: Optional[str] = ""
    status: int = 0
    priority: int = 1  # 1-Low, 2-Medium, 3-High, 4-Urgent
    created_at: Instant
    updated_at: Instant
    type: Optional[str] = None
    category: Optional[str] = None
    agent_name: Optional[str] = None
    requester: Optional[Requester] = None
    stats: Optional[TicketStats] = None

    @field_validator("subject", mode="before")
    @classmethod
    def _none_subject(cls, value):
        return value or ""

    @property
    def closure_time(self) -> datetime:
        """When the ticket was closed: closed_at, else resolved_at, else updated_at."""
        if self.stats is not None:
            if self.stats.closed_at is not None:
                return self.stats.closed_at
            if self.stats.resolved_at is not None:
                return self.stats.resolved_at
        return self.updated_at

    @property
    def reopened_at(self) -> Optional[datetime]:
        return self.stats.reopened_at if self.stats is not None else None


class Conversation(BaseModel):
    """A reply or note on a ticket. ``user_id`` is the author (agent or requester)."""

    id: int
    ticket_id: Optional[int] = None
    user_id: Optional[int] = None
    body_text: str = ""
    created_at: Instant
    private: bool = False
    source: Optional[int] = None

    @field_validator("body_text", mode="before")
    @classmethod
    def _none_body(cls, value):
        return value or ""


class TicketWithConversations(Ticket):
    conversations: list[Conversation] = Field(default_factory=list)


class TicketField(BaseModel):
    id: int
    name: str = ""
    label: str = ""
    choices: Optional[Union[dict[str, Any], list[Any]]] = None


class ActiveTickets(BaseModel):
    """Result of an active-ticket snapshot query."""

    tickets: list[Ticket] = Field(default_factory=list)
    total: int = 0


# ==================== ENGINE OUTPUT ====================


class DailyAgentStats(BaseModel):
    date: str  # YYYY-MM-DD at the display offset
    total_responses: int = 0
    total_actions: int = 0
    total_closed: int = 0
    total_agent_activity: int = 0
    total_min: int = 0
    total_max: int = 0
    estimated_time_range: str = ""


class AgentGroupStat(BaseModel):
    group_name: str
    total: int = 0
    worked: int = 0
    closed: int = 0
    percent: str = "0%"


class AgentActivitySummary(BaseModel):
    """Per-agent activity for one report window."""

    agent_id: int
    agent_name: str
    ticket_ids: list[int] = Field(default_factory=list)
    ticket_count: int = 0
    total_responses: int = 0
    total_actions: int = 0
    total_closed: int = 0
    total_agent_activity: int = 0
    total_min: int = 0
    total_max: int = 0
    estimated_time_range: str = ""
    activity_ratio: str = "0%"
    daily_breakdown: list[DailyAgentStats] = Field(default_factory=list)
    group_stats: list[AgentGroupStat] = Field(default_factory=list)


# ==================== REPORT OUTPUT ====================


class TicketCounts(BaseModel):
    created: int = 0
    reopened: int = 0
    closed: int = 0
    worked: int = 0
    customer_responded: int = 0


class TicketGroupStat(BaseModel):
    group_id: Optional[int] = None
    group_name: str
    count: int = 0
    percent: str = "0%"
    raw_percent: float = 0.0
    type_distribution: dict[str, int] = Field(default_factory=dict)


class GroupStatsByMetric(BaseModel):
    created: list[TicketGroupStat] = Field(default_factory=list)
    reopened: list[TicketGroupStat] = Field(default_factory=list)
    closed: list[TicketGroupStat] = Field(default_factory=list)
    worked: list[TicketGroupStat] = Field(default_factory=list)
    tickets_at_period_start: list[TicketGroupStat] = Field(default_factory=list)
    tickets_at_period_end: list[TicketGroupStat] = Field(default_factory=list)


class ActivityReport(BaseModel):
    """Everything a renderer needs for one report window."""

    date_from: str
    date_to: str
    window_start: datetime
    window_end: datetime
    agent_summary: list[AgentActivitySummary] = Field(default_factory=list)
    ticket_stats: TicketCounts = Field(default_factory=TicketCounts)
    prev_ticket_stats: TicketCounts = Field(default_factory=TicketCounts)
    last_24h_ticket_stats: TicketCounts = Field(default_factory=TicketCounts)
    group_stats: GroupStatsByMetric = Field(default_factory=GroupStatsByMetric)
    tickets_at_period_start_count: int = 0
    tickets_at_period_end_count: int = 0
    tickets_closed_and_created_in_period: int = 0
    ticket_ids: dict[str, list[int]] = Field(default_factory=dict)  # metric -> ticket ids, for drill-down
    report_generated_at: datetime
