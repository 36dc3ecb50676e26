"""
Single-request layer: one HTTP call through the shared RateLimiter with
bounded retries for transient conditions.

Retries on:
- Network-layer failures (connection reset, DNS, timeouts)
- 429 rate limit and 503 overload, after pausing the whole limiter queue
  for the server's Retry-After

Does NOT retry on:
- 404 with a non-JSON body (route/proxy misconfiguration, raised immediately)
- Any other status. Those are returned for the caller to classify.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import aiohttp

from .errors import ConfigurationError, MalformedResponseError, NetworkError, RateLimitError, raise_for_api_error
from .rate_limiter import RateLimiter


@dataclass
class ApiResponse:
    """A fully read HTTP response. Header names are lower-cased."""

    status: int
    text: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type.lower()

    def json(self) -> Any:
        """Decode the body. Raises MalformedResponseError on malformed JSON."""
        if not self.text:
            return None
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise MalformedResponseError(
                f"Malformed response from {self.url or 'server'}: {e}", status=self.status
            ) from e


class HttpFetcher:
    """Issues rate-limited, retried requests against one API base URL."""

    MAX_RETRIES = 2
    RETRY_DELAY_BASE = 1.0  # seconds, exponential backoff: 2s, 4s (+ jitter)
    RETRY_JITTER = 0.5
    DEFAULT_RETRY_AFTER = 5
    RATE_LIMIT_STATUS_CODES = {429, 503}
    LOW_QUOTA_WARNING = 50

    def __init__(
        self,
        session: aiohttp.ClientSession,
        limiter: RateLimiter,
        base_url: str,
        max_retries: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
        retry_jitter: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries if max_retries is not None else self.MAX_RETRIES
        self.retry_delay_base = retry_delay_base if retry_delay_base is not None else self.RETRY_DELAY_BASE
        self.retry_jitter = retry_jitter if retry_jitter is not None else self.RETRY_JITTER
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def build_url(self, endpoint: str) -> str:
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self.base_url}{path}"

    @classmethod
    def parse_retry_after(cls, header_value: Optional[str]) -> int:
        """
        Parse a Retry-After header into whole seconds.

        The header can be either:
        - An integer (seconds to wait)
        - An HTTP-date (absolute time to retry after)

        Missing or unparseable values fall back to DEFAULT_RETRY_AFTER.
        """
        if not header_value:
            return cls.DEFAULT_RETRY_AFTER
        try:
            return max(0, int(header_value))
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(header_value)
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
                return max(0, int(delta))
            except (ValueError, TypeError):
                return cls.DEFAULT_RETRY_AFTER

    def _backoff_delay(self, attempt: int) -> float:
        return self.retry_delay_base * (2 ** attempt) + random.uniform(0, self.retry_jitter)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict],
        json_data: Optional[dict],
    ) -> ApiResponse:
        async with self.session.request(method, url, params=params, json=json_data) as response:
            text = await response.text(errors="replace")
            headers = {str(k).lower(): v for k, v in response.headers.items()}
            return ApiResponse(
                status=response.status,
                text=text,
                headers=headers,
                url=url,
                reason=getattr(response, "reason", None),
            )

    def _log_quota(self, response: ApiResponse, endpoint: str) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is None:
            return
        try:
            remaining_int = int(remaining)
        except (ValueError, TypeError):
            return
        if remaining_int < self.LOW_QUOTA_WARNING:
            self.logger.warning(f"Rate limit low: {remaining_int} requests remaining on {endpoint}")
        else:
            self.logger.debug(f"Rate limit remaining: {remaining_int} on {endpoint}")

    async def fetch_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        max_retries: Optional[int] = None,
    ) -> ApiResponse:
        """
        Perform one request, retrying transient failures.

        Returns:
            The response, OK or not, unless it was a transient failure.

        Raises:
            ConfigurationError: 404 with a non-JSON body
            RateLimitError: 429/503 on every attempt
            NetworkError: network failure on every attempt
        """
        url = self.build_url(endpoint)
        retries = self.max_retries if max_retries is None else max_retries
        clean_params = {k: v for k, v in (params or {}).items() if v is not None} or None
        last_error: Optional[BaseException] = None

        for attempt in range(retries + 1):
            if attempt > 0:
                await asyncio.sleep(self._backoff_delay(attempt))

            try:
                response = await self.limiter.schedule(
                    lambda: self._send(method, url, clean_params, json_data)
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt < retries:
                    self.logger.info(f"Connection retry ({attempt + 1}/{retries}) for {endpoint}: {e}")
                continue

            self._log_quota(response, endpoint)

            if response.status == 404 and not response.is_json:
                self.logger.error(f"Route mismatch at {url}. If using a proxy, check its routing.")
                raise ConfigurationError(
                    f"Backend Error: The server returned 404 for {url} with a non-JSON body. "
                    f"Check the API base URL / proxy configuration.",
                    status=404,
                )

            if response.status in self.RATE_LIMIT_STATUS_CODES:
                retry_after = self.parse_retry_after(response.headers.get("retry-after"))
                self.limiter.set_global_backoff(retry_after)
                if attempt < retries:
                    self.logger.warning(
                        f"HTTP {response.status} on {endpoint}, retry-after={retry_after}s "
                        f"(attempt {attempt + 1}/{retries + 1})"
                    )
                    continue
                raise RateLimitError(
                    f"Server is busy. Please try again in {retry_after} seconds.",
                    retry_after=retry_after,
                    status=response.status,
                )

            return response

        self.logger.error(f"Fetch Error: giving up on {url}: {last_error}")
        raise NetworkError(
            f"Network Error: Unable to connect to the server ({url}). Please check your connection."
        ) from last_error

    async def request_json(
        self,
        method: str,
        endpoint: str,
        context: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> Any:
        """fetch_with_retry + error classification + JSON decode, for single-shot calls."""
        response = await self.fetch_with_retry(method, endpoint, params=params, json_data=json_data)
        if not response.ok:
            raise_for_api_error(response, context)
        return response.json()
