"""
Key/value cache for conversation threads.

Conversation threads are the expensive part of a report run (one paginated
call per ticket), so they are cached per ticket and invalidated whenever the
ticket has been updated since the thread was stored.

Entries are stored under ``fd_conv_<ticket_id>`` as::

    {"timestamp": "<ISO instant the entry was written>", "data": [<conversation>, ...]}
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from .models import Conversation, Ticket
from .time_utils import parse_timestamp

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = "fd_conv_"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueCache(ABC):
    """Minimal cache interface. Values must be JSON-serialisable."""

    # True when get/put touch the filesystem or network; callers on the
    # event loop then run them in a worker thread.
    blocking_io = False

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None on a miss."""
        pass

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class InMemoryCache(KeyValueCache):
    """Process-local cache. Lives as long as the object."""

    def __init__(self):
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class JsonFileCache(KeyValueCache):
    """
    One JSON file per key inside ``directory``.

    Unreadable or corrupt files are treated as misses. Write failures (disk
    full, permissions) are logged and skipped; a report run never fails
    because the cache could not be written.
    """

    blocking_io = True

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"Cache read failed for {key}: {e}")
            return None

    def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.parent / f"{path.name}.{threading.get_ident()}.tmp"  # unique per writer thread
        try:
            with open(tmp_path, "w") as f:
                json.dump(value, f)
            tmp_path.replace(path)
        except OSError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")


class NullCache(KeyValueCache):
    """Cache that stores nothing. Every lookup is a miss."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def put(self, key: str, value: Any) -> None:
        pass

    def delete(self, key: str) -> None:
        pass


def conversation_cache_key(ticket_id: int) -> str:
    return f"{CONVERSATION_PREFIX}{ticket_id}"


def get_cached_conversations(cache: KeyValueCache, ticket: Ticket) -> Optional[list[Conversation]]:
    """
    Cached thread for ``ticket``, or None on a miss.

    An entry written before the ticket's last update is stale: it is deleted
    and reported as a miss. Malformed entries are treated the same way.
    """
    key = conversation_cache_key(ticket.id)
    entry = cache.get(key)
    if entry is None:
        return None

    try:
        cached_at = parse_timestamp(entry["timestamp"])
        if ticket.updated_at > cached_at:
            cache.delete(key)
            return None
        return [Conversation.model_validate(item) for item in entry["data"]]
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        logger.debug(f"Discarding malformed cache entry {key}: {e}")
        cache.delete(key)
        return None


def cache_conversations(
    cache: KeyValueCache,
    ticket: Ticket,
    conversations: list[Conversation],
    now: Optional[datetime] = None,
) -> None:
    """Store a freshly fetched thread, stamped with the current instant."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    cache.put(
        conversation_cache_key(ticket.id),
        {
            "timestamp": timestamp,
            "data": [c.model_dump(mode="json") for c in conversations],
        },
    )
