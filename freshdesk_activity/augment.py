"""
Attach conversation threads (and display annotations) to tickets.

Tickets are processed in fixed-size batches: threads within a batch are
fetched concurrently (the shared RateLimiter still governs the actual request
rate), and each batch is awaited before the next starts so progress can be
reported and memory stays bounded.
"""

import asyncio
import logging
from typing import Callable, Mapping, Optional, Sequence

from .cache import KeyValueCache, NullCache, cache_conversations, get_cached_conversations
from .categories import auto_categorize_ticket
from .errors import ConfigurationError, FreshdeskError
from .models import Conversation, Ticket, TicketWithConversations

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

# progress(done, total, label)
ProgressCallback = Callable[[int, int, str], None]


class BatchAugmentor:
    """Turns Ticket lists into TicketWithConversations lists."""

    def __init__(
        self,
        client,
        cache: Optional[KeyValueCache] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.client = client
        self.cache = cache if cache is not None else NullCache()
        self.batch_size = batch_size

    async def _cache_call(self, func, *args):
        if self.cache.blocking_io:
            return await asyncio.to_thread(func, self.cache, *args)
        return func(self.cache, *args)

    async def _load_conversations(self, ticket: Ticket) -> list[Conversation]:
        cached = await self._cache_call(get_cached_conversations, ticket)
        if cached is not None:
            return cached

        try:
            conversations = await self.client.fetch_conversations(ticket.id)
        except ConfigurationError:
            raise
        except FreshdeskError as e:
            # Not cached: a transient failure must not pin an empty thread.
            logger.warning(f"Failed to fetch conversations for ticket {ticket.id}: {e}")
            return []

        await self._cache_call(cache_conversations, ticket, conversations)
        return conversations

    async def _augment_one(
        self,
        ticket: Ticket,
        agent_map: Mapping[int, str],
    ) -> TicketWithConversations:
        conversations = await self._load_conversations(ticket)
        data = ticket.model_dump()
        data["conversations"] = conversations
        if ticket.responder_id is not None and ticket.responder_id in agent_map:
            data["agent_name"] = agent_map[ticket.responder_id]
        data["category"] = ticket.category or auto_categorize_ticket(ticket)
        return TicketWithConversations.model_validate(data)

    async def augment(
        self,
        tickets: Sequence[Ticket],
        agent_map: Optional[Mapping[int, str]] = None,
        progress: Optional[ProgressCallback] = None,
        label: str = "Analyzing tickets",
    ) -> list[TicketWithConversations]:
        """
        Attach threads to ``tickets``, preserving input order.

        Args:
            tickets: Tickets to augment
            agent_map: Agent id -> display name, used for ``agent_name``
            progress: Called with (done, total, label) before each batch and once at the end
            label: Progress label

        Returns:
            One TicketWithConversations per input ticket. A ticket whose thread
            could not be fetched gets an empty conversation list.
        """
        agent_map = agent_map or {}
        total = len(tickets)
        augmented: list[TicketWithConversations] = []

        for offset in range(0, total, self.batch_size):
            if progress:
                progress(offset, total, label)
            batch = tickets[offset:offset + self.batch_size]
            results = await asyncio.gather(*(self._augment_one(t, agent_map) for t in batch))
            augmented.extend(results)
            logger.debug(f"{label}: {len(augmented)}/{total}")

        if progress:
            progress(total, total, label)
        return augmented
