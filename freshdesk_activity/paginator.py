"""
Drains Freshdesk collection endpoints.

Two response shapes are hidden behind one interface:
- List endpoints return a plain JSON array. Pages are walked sequentially
  (100 per page) until a short or empty page.
- Search endpoints (``/search/``) return ``{"results": [...], "total": n}``
  with 30 per page. Page 1 tells us ``total``; the remaining pages are then
  requested concurrently through the shared rate limiter. Freshdesk serves
  at most 10 search pages.
"""

import asyncio
import logging
import math
from typing import Any, AsyncGenerator, Optional

from .errors import ConfigurationError, FreshdeskError, MalformedResponseError, raise_for_api_error
from .http_client import HttpFetcher


class Paginator:
    LIST_PAGE_SIZE = 100
    SEARCH_PAGE_SIZE = 30
    SEARCH_PAGE_LIMIT = 10
    DEFAULT_MAX_PAGES = 300

    def __init__(self, fetcher: HttpFetcher, logger: Optional[logging.Logger] = None):
        self.fetcher = fetcher
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    @staticmethod
    def is_search_endpoint(endpoint: str) -> bool:
        return "/search/" in endpoint

    async def _first_page(self, endpoint: str, params: dict, search: bool) -> Any:
        first_params = {**params, "page": 1}
        if not search:
            first_params["per_page"] = self.LIST_PAGE_SIZE
        response = await self.fetcher.fetch_with_retry("GET", endpoint, params=first_params)
        if not response.ok:
            raise_for_api_error(response, endpoint)
        return response.json()

    async def paginate(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> AsyncGenerator[dict, None]:
        """
        Yield every item of a collection endpoint.

        Args:
            endpoint: API path, e.g. ``/v2/agents`` or ``/v2/search/tickets``
            params: Extra query parameters (``query`` for search endpoints)
            max_pages: Page cap. Search endpoints are additionally capped at
                SEARCH_PAGE_LIMIT.

        Raises:
            FreshdeskError: if page 1 fails (MalformedResponseError for a
                non-JSON body). Later failures only shorten the result.
        """
        base_params = dict(params or {})
        search = self.is_search_endpoint(endpoint)
        data = await self._first_page(endpoint, base_params, search)

        if search and isinstance(data, dict) and "results" in data:
            items, _ = await self._drain_search(endpoint, base_params, data, max_pages)
            for item in items:
                yield item
            return

        if isinstance(data, list):
            async for item in self._drain_list(endpoint, base_params, data, max_pages):
                yield item
            return

        self.logger.warning(f"Unexpected response shape from {endpoint}: {type(data).__name__}")

    async def fetch_all(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> list[dict]:
        return [item async for item in self.paginate(endpoint, params, max_pages)]

    async def fetch_search(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        max_pages: int = SEARCH_PAGE_LIMIT,
    ) -> tuple[list[dict], int]:
        """Run a search to completion, returning (results, total reported by the server)."""
        base_params = dict(params or {})
        data = await self._first_page(endpoint, base_params, search=True)
        if not isinstance(data, dict):
            self.logger.warning(f"Unexpected search response from {endpoint}: {type(data).__name__}")
            return [], 0
        return await self._drain_search(endpoint, base_params, data, max_pages)

    async def _drain_list(
        self,
        endpoint: str,
        params: dict,
        first_page: list,
        max_pages: int,
    ) -> AsyncGenerator[dict, None]:
        page_data = first_page
        page = 1
        while True:
            for item in page_data:
                yield item

            if len(page_data) < self.LIST_PAGE_SIZE:
                return

            page += 1
            if page > max_pages:
                self.logger.warning(f"Stopped {endpoint} at the {max_pages}-page cap")
                return

            response = await self.fetcher.fetch_with_retry(
                "GET", endpoint, params={**params, "page": page, "per_page": self.LIST_PAGE_SIZE}
            )
            if not response.ok:
                self.logger.warning(f"Page {page} of {endpoint} returned HTTP {response.status}; stopping")
                return

            try:
                page_data = response.json()
            except MalformedResponseError as e:
                self.logger.warning(f"Page {page} of {endpoint} failed: {e}; stopping")
                return
            if not isinstance(page_data, list) or not page_data:
                return

    async def _drain_search(
        self,
        endpoint: str,
        params: dict,
        first_page: dict,
        max_pages: int,
    ) -> tuple[list[dict], int]:
        results = list(first_page.get("results") or [])
        total = int(first_page.get("total") or 0)

        page_count = min(math.ceil(total / self.SEARCH_PAGE_SIZE), self.SEARCH_PAGE_LIMIT, max_pages)
        if total > len(results) and page_count > 1:
            pages = await asyncio.gather(
                *(self._fetch_search_page(endpoint, params, page) for page in range(2, page_count + 1))
            )
            for page_results in pages:
                results.extend(page_results)

        if total and len(results) > total:
            results = results[:total]
        return results, total

    async def _fetch_search_page(self, endpoint: str, params: dict, page: int) -> list[dict]:
        """One search page. Failures contribute an empty page instead of aborting the search."""
        try:
            response = await self.fetcher.fetch_with_retry("GET", endpoint, params={**params, "page": page})
        except ConfigurationError:
            raise
        except FreshdeskError as e:
            self.logger.warning(f"Page {page} failed: {e}")
            return []

        if not response.ok:
            self.logger.warning(f"Page {page} failed: HTTP {response.status}")
            return []

        try:
            data = response.json()
        except MalformedResponseError as e:
            self.logger.warning(f"Page {page} failed: {e}")
            return []
        if not isinstance(data, dict):
            return []
        return list(data.get("results") or [])
