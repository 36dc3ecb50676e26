"""Fake aiohttp session, limiter and wire-data builders shared by the tests."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from freshdesk_activity.models import TicketWithConversations

JSON_HEADERS = {"Content-Type": "application/json; charset=utf-8"}


class FakeResponse:
    """Stand-in for an aiohttp ClientResponse that has been entered."""

    def __init__(self, status: int = 200, body: Any = None, headers: Optional[dict] = None, reason: str = "OK"):
        self.status = status
        self.reason = reason
        self.headers = dict(JSON_HEADERS if headers is None else headers)
        if body is None:
            self._raw = b""
        elif isinstance(body, bytes):
            self._raw = body
        elif isinstance(body, str):
            self._raw = body.encode("utf-8")
        else:
            self._raw = json.dumps(body).encode("utf-8")

    async def text(self, encoding: Optional[str] = None, errors: str = "strict") -> str:
        return self._raw.decode(encoding or "utf-8", errors)


def json_response(data: Any, status: int = 200, headers: Optional[dict] = None) -> FakeResponse:
    merged = dict(JSON_HEADERS)
    merged.update(headers or {})
    return FakeResponse(status=status, body=data, headers=merged)


def html_response(status: int, html: str) -> FakeResponse:
    return FakeResponse(status=status, body=html, headers={"Content-Type": "text/html"}, reason="Not Found")


class FakeSession:
    """
    Routes ``session.request(...)`` to ``handler(method, url, params, json)``.

    The handler returns a FakeResponse or raises (e.g. aiohttp.ClientConnectionError).
    Every call is recorded in ``calls`` as a dict.
    """

    def __init__(self, handler: Callable):
        self.handler = handler
        self.calls: list[dict] = []
        self.closed = False

    @asynccontextmanager
    async def request(self, method, url, params=None, json=None):
        self.calls.append({"method": method, "url": url, "params": dict(params or {}), "json": json})
        response = self.handler(method, url, params or {}, json)
        yield response

    async def close(self):
        self.closed = True


def sequence_handler(*responses):
    """Handler returning (or raising) the given responses in order."""
    remaining = list(responses)

    def handler(method, url, params, body):
        item = remaining.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    return handler


class PassthroughLimiter:
    """Runs tasks immediately and records backoff requests."""

    def __init__(self):
        self.backoffs: list[float] = []
        self.scheduled = 0

    async def schedule(self, task):
        self.scheduled += 1
        return await task()

    def set_global_backoff(self, seconds):
        self.backoffs.append(seconds)


def ts(value: str) -> datetime:
    """'2024-03-01T10:00:00+02:00' -> aware datetime."""
    return datetime.fromisoformat(value)


def make_ticket(ticket_id: int, **overrides) -> dict:
    data = {
        "id": ticket_id,
        "requester_id": 9000,
        "responder_id": None,
        "group_id": 1,
        "subject": f"Ticket {ticket_id}",
        "description_text": "",
        "status": 2,
        "priority": 1,
        "created_at": "2024-03-01T08:00:00Z",
        "updated_at": "2024-03-01T09:00:00Z",
        "type": None,
        "stats": {"reopened_at": None, "resolved_at": None, "closed_at": None},
    }
    data.update(overrides)
    return data


def make_conversation(conversation_id: int, user_id: Optional[int], created_at: str, body: str = "Thanks for your patience.", private: bool = False, ticket_id: int = 1) -> dict:
    return {
        "id": conversation_id,
        "ticket_id": ticket_id,
        "user_id": user_id,
        "body_text": body,
        "created_at": created_at,
        "private": private,
        "source": 2 if private else 0,
    }


def augmented(ticket: dict, conversations: list) -> TicketWithConversations:
    return TicketWithConversations.model_validate({**ticket, "conversations": conversations})


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
