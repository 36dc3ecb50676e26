"""
Runtime configuration.

Values come from the environment (a project-root ``.env`` is loaded first).
Integer knobs are bounds-checked so a typo cannot disable the rate limiter
or exhaust the account quota.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .rate_limiter import DEFAULT_MAX_CONCURRENT, DEFAULT_MAX_PER_WINDOW, DEFAULT_WINDOW_MS

logger = logging.getLogger(__name__)

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

DEFAULT_DOMAIN = "ecomplete.freshdesk.com"


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default
    if not (min_val <= val <= max_val):
        logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
        return default
    return val


def _parse_env_list(name: str) -> frozenset:
    raw = os.getenv(name, "")
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Connection, quota and report settings for one helpdesk."""

    domain: str = DEFAULT_DOMAIN
    base_url: Optional[str] = None  # e.g. a local proxy: http://localhost:8080/api
    api_key: Optional[str] = None
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    window_ms: int = DEFAULT_WINDOW_MS
    max_per_window: int = DEFAULT_MAX_PER_WINDOW
    max_retries: int = 2
    batch_size: int = 50
    display_offset_hours: int = 2
    agent_emails: frozenset = field(default_factory=frozenset)
    cache_dir: Optional[Path] = None

    @property
    def api_base_url(self) -> str:
        """Origin + ``/api`` prefix every endpoint path is appended to."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"https://{self.domain}/api"

    @property
    def display_offset(self) -> timedelta:
        return timedelta(hours=self.display_offset_hours)

    def is_agent_allowed(self, email: Optional[str]) -> bool:
        """Empty allowlist means every agent is reported."""
        if not self.agent_emails:
            return True
        return bool(email) and email.lower() in self.agent_emails

    @classmethod
    def from_env(cls) -> "Settings":
        cache_dir = os.getenv("FRESHDESK_CACHE_DIR", "").strip()
        return cls(
            domain=os.getenv("FRESHDESK_DOMAIN", DEFAULT_DOMAIN),
            base_url=os.getenv("FRESHDESK_BASE_URL") or None,
            api_key=os.getenv("FRESHDESK_API_KEY") or None,
            max_concurrent=_parse_env_int("FRESHDESK_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT, 1, 50),
            window_ms=_parse_env_int("FRESHDESK_WINDOW_MS", DEFAULT_WINDOW_MS, 100, 60000),
            max_per_window=_parse_env_int("FRESHDESK_MAX_PER_WINDOW", DEFAULT_MAX_PER_WINDOW, 1, 100),
            max_retries=_parse_env_int("FRESHDESK_MAX_RETRIES", 2, 0, 5),
            batch_size=_parse_env_int("FRESHDESK_BATCH_SIZE", 50, 1, 200),
            display_offset_hours=_parse_env_int("FRESHDESK_DISPLAY_OFFSET_HOURS", 2, -12, 14),
            agent_emails=_parse_env_list("FRESHDESK_AGENT_EMAILS"),
            cache_dir=Path(cache_dir) if cache_dir else None,
        )
