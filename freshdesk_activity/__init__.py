"""Freshdesk agent activity reporting: rate-limited acquisition and activity aggregation."""

from .activity import calculate_all_agent_activity
from .augment import BatchAugmentor
from .cache import InMemoryCache, JsonFileCache, KeyValueCache, NullCache
from .config import Settings
from .errors import (
    AccessDeniedError,
    ApiError,
    AuthenticationError,
    ConfigurationError,
    FreshdeskError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from .freshdesk_client import FreshdeskClient
from .paginator import Paginator
from .rate_limiter import RateLimiter
from .report import ReportBuilder

__version__ = "0.1.0"
