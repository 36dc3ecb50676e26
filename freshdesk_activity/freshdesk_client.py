"""
Freshdesk v2 acquisition service.

Every request goes through one shared RateLimiter (per-account quota) and the
retrying HttpFetcher. Collection endpoints are drained with the Paginator.

Usage:
    async with FreshdeskClient(Settings.from_env()) as client:
        agents = await client.get_agents()
        tickets = await client.get_tickets_updated_in_period(start, end)
"""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence, Type, TypeVar

import aiohttp
from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import AccessDeniedError, ApiError, ConfigurationError, FreshdeskError
from .http_client import HttpFetcher
from .models import ActiveTickets, Agent, Conversation, Group, Ticket, TicketField
from .paginator import Paginator
from .rate_limiter import RateLimiter
from .time_utils import ensure_aware, format_api_timestamp

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_ACTIVE_STATUSES = (2, 3, 6, 7)  # Open, Pending, Waiting on Customer, Waiting on Third Party
TICKET_INCLUDES = "description,stats,requester"
SEARCH_FALLBACK_STATUS_CODES = {400, 403}


def _parse_models(model: Type[ModelT], items: Iterable[dict], kind: str) -> list[ModelT]:
    """Validate wire records, skipping (and logging) any that cannot be parsed."""
    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            item_id = item.get("id") if isinstance(item, dict) else None
            logger.warning(f"Skipping malformed {kind} {item_id}: {e.error_count()} validation error(s)")
    return parsed


def build_status_query(status_ids: Sequence[int]) -> str:
    return "(" + " OR ".join(f"status:{status_id}" for status_id in status_ids) + ")"


class FreshdeskClient:
    """Async client for the Freshdesk endpoints the activity report needs."""

    # HTTP timeout: (connect_timeout, read_timeout) in seconds
    DEFAULT_TIMEOUT = (10, 30)

    def __init__(
        self,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: tuple = None,
    ):
        self.settings = settings or Settings.from_env()
        if not self.settings.api_key and not self.settings.base_url:
            raise ConfigurationError("FRESHDESK_API_KEY not set (and no FRESHDESK_BASE_URL proxy configured)")

        self.limiter = limiter or RateLimiter(
            max_concurrent=self.settings.max_concurrent,
            window_ms=self.settings.window_ms,
            max_per_window=self.settings.max_per_window,
        )
        self.timeout = timeout or self.DEFAULT_TIMEOUT

        self._session = session
        self._owns_session = session is None
        self._fetcher: Optional[HttpFetcher] = None
        self._paginator: Optional[Paginator] = None
        if session is not None:
            self._bind(session)

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with auth, JSON headers and timeout.

        With an API key the session uses Basic auth ``<key>:X``. In proxy mode
        (base URL set, no key) the proxy injects credentials, so none are sent.
        """
        timeout = aiohttp.ClientTimeout(
            connect=self.timeout[0],
            sock_read=self.timeout[1],
            total=self.timeout[0] + self.timeout[1],
        )
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        auth = aiohttp.BasicAuth(self.settings.api_key, "X") if self.settings.api_key else None
        return aiohttp.ClientSession(timeout=timeout, headers=headers, auth=auth)

    def _bind(self, session: aiohttp.ClientSession) -> None:
        self._fetcher = HttpFetcher(
            session,
            self.limiter,
            self.settings.api_base_url,
            max_retries=self.settings.max_retries,
        )
        self._paginator = Paginator(self._fetcher)

    async def __aenter__(self) -> "FreshdeskClient":
        if self._session is None:
            self._session = self._get_aiohttp_session()
            self._bind(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._fetcher = None
            self._paginator = None

    @property
    def fetcher(self) -> HttpFetcher:
        if self._fetcher is None:
            raise RuntimeError("FreshdeskClient is not open; use 'async with FreshdeskClient(...)'")
        return self._fetcher

    @property
    def paginator(self) -> Paginator:
        if self._paginator is None:
            raise RuntimeError("FreshdeskClient is not open; use 'async with FreshdeskClient(...)'")
        return self._paginator

    # ==================== DIRECTORY ====================

    async def get_authenticated_agent(self) -> Agent:
        """The agent owning the API key. Used as a connection/credential check."""
        data = await self.fetcher.request_json("GET", "/v2/agents/me", "Agent Authentication")
        return Agent.model_validate(data)

    async def get_agents(self) -> list[Agent]:
        items = await self.paginator.fetch_all("/v2/agents")
        return _parse_models(Agent, items, "agent")

    async def get_groups(self) -> list[Group]:
        items = await self.paginator.fetch_all("/v2/groups")
        return _parse_models(Group, items, "group")

    async def get_ticket_fields(self) -> list[TicketField]:
        data = await self.fetcher.request_json("GET", "/v2/ticket_fields", "Ticket Fields")
        return _parse_models(TicketField, data or [], "ticket field")

    # ==================== CONVERSATIONS ====================

    async def fetch_conversations(self, ticket_id: int) -> list[Conversation]:
        """Full conversation thread of one ticket. Raises FreshdeskError on failure."""
        items = await self.paginator.fetch_all(f"/v2/tickets/{ticket_id}/conversations")
        return _parse_models(Conversation, items, "conversation")

    async def get_conversations(self, ticket_id: int) -> list[Conversation]:
        """Like fetch_conversations, but a failed thread degrades to an empty list."""
        try:
            return await self.fetch_conversations(ticket_id)
        except ConfigurationError:
            raise
        except FreshdeskError as e:
            logger.warning(f"Failed to fetch conversations for ticket {ticket_id}: {e}")
            return []

    # ==================== TICKET WRITES ====================

    async def update_ticket(self, ticket_id: int, payload: dict) -> Ticket:
        data = await self.fetcher.request_json(
            "PUT", f"/v2/tickets/{ticket_id}", f"Update Ticket {ticket_id}", json_data=payload
        )
        return Ticket.model_validate(data)

    async def update_ticket_category(self, ticket_id: int, category: str) -> Ticket:
        return await self.update_ticket(ticket_id, {"custom_fields": {"category": category}})

    # ==================== TICKET QUERIES ====================

    async def get_tickets_updated_in_period(self, from_date: datetime, to_date: datetime) -> list[Ticket]:
        """
        Tickets whose updated_at falls inside [from_date, to_date].

        Uses the list endpoint (``updated_since`` + ascending order) and filters
        the upper bound locally. Plans or roles that reject the list filter
        (400/403) fall back to the search endpoint, which caps at 300 results.
        """
        from_date = ensure_aware(from_date)
        to_date = ensure_aware(to_date)
        params = {
            "updated_since": format_api_timestamp(from_date),
            "include": TICKET_INCLUDES,
            "order_by": "updated_at",
            "order_type": "asc",
        }

        try:
            items = await self.paginator.fetch_all("/v2/tickets", params, max_pages=Paginator.DEFAULT_MAX_PAGES)
        except ApiError as e:
            if e.status not in SEARCH_FALLBACK_STATUS_CODES:
                raise
            logger.warning(f"Primary list API failed ({e.status}). Attempting search fallback.")
            return await self._search_tickets_updated_in_period(from_date, to_date)

        tickets = _parse_models(Ticket, items, "ticket")
        filtered = [t for t in tickets if from_date <= t.updated_at <= to_date]
        logger.info(f"Fetched {len(tickets)} tickets. Filtered to {len(filtered)}.")
        return filtered

    async def _search_tickets_updated_in_period(self, from_date: datetime, to_date: datetime) -> list[Ticket]:
        query = (
            f"\"updated_at:>'{format_api_timestamp(from_date)}' "
            f"AND updated_at:<'{format_api_timestamp(to_date)}'\""
        )
        items, total = await self.paginator.fetch_search(
            "/v2/search/tickets", {"query": query}, max_pages=Paginator.SEARCH_PAGE_LIMIT
        )
        logger.info(f"Search fallback returned {len(items)} of {total} tickets")
        return _parse_models(Ticket, items, "ticket")

    async def get_active_tickets(
        self,
        status_ids: Optional[Sequence[int]] = None,
        group_ids: Optional[Sequence[int]] = None,
    ) -> ActiveTickets:
        """
        Snapshot of currently active tickets.

        With ``group_ids`` one search runs per group (concurrently); a failing
        group contributes nothing and duplicates are removed. ``total`` is then
        the number of unique tickets. Without groups, ``total`` is the count the
        server reports, which can exceed the tickets returned.
        """
        status_query = build_status_query(status_ids or DEFAULT_ACTIVE_STATUSES)
        endpoint = "/v2/search/tickets"

        if group_ids:
            results = await asyncio.gather(
                *(self._search_active_group(endpoint, status_query, group_id) for group_id in group_ids)
            )
            unique: dict[int, Ticket] = {}
            for group_tickets in results:
                for ticket in group_tickets:
                    unique[ticket.id] = ticket
            tickets = list(unique.values())
            return ActiveTickets(tickets=tickets, total=len(tickets))

        items, total = await self.paginator.fetch_search(endpoint, {"query": f'"{status_query}"'})
        tickets = _parse_models(Ticket, items, "ticket")
        return ActiveTickets(tickets=tickets, total=total or len(tickets))

    async def _search_active_group(self, endpoint: str, status_query: str, group_id: int) -> list[Ticket]:
        query = f'"{status_query} AND group_id:{group_id}"'
        try:
            items, _ = await self.paginator.fetch_search(endpoint, {"query": query})
        except ConfigurationError:
            raise
        except FreshdeskError as e:
            logger.warning(f"Active ticket search failed for group {group_id}: {e}")
            return []
        return _parse_models(Ticket, items, "ticket")
