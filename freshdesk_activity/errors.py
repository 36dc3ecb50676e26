"""
Typed failures raised by the Freshdesk acquisition layer.

Callers generally catch FreshdeskError. The subclasses separate the
categories a report run treats differently:

- ConfigurationError: a non-JSON 404, i.e. the proxy/route is broken. Fatal.
- NetworkError / RateLimitError: transient conditions that survived retries.
- MalformedResponseError: a 2xx body that is not JSON (gateway hiccups).
- ApiError and subclasses: the remote API answered with a classified error.
"""

import re
from typing import Optional


class FreshdeskError(Exception):
    """Base class for acquisition-layer errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class ConfigurationError(FreshdeskError):
    """A route returned a non-JSON 404. Never retried."""


class NetworkError(FreshdeskError):
    """The server could not be reached after all retries."""


class MalformedResponseError(FreshdeskError):
    """A successful response whose body is not valid JSON."""


class RateLimitError(FreshdeskError):
    """429/503 persisted after all retries."""

    def __init__(self, message: str, retry_after: int, status: Optional[int] = 429):
        self.retry_after = retry_after
        super().__init__(message, status=status)


class ApiError(FreshdeskError):
    """The API returned a non-OK response."""

    def __init__(self, message: str, status: int):
        super().__init__(message, status=status)


class AuthenticationError(ApiError):
    pass


class AccessDeniedError(ApiError):
    pass


class NotFoundError(ApiError):
    pass


class ServerError(ApiError):
    pass


_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>?")


def parse_api_error(response) -> str:
    """
    Extract a human-readable message from an error response body.

    Handles HTML error pages from proxies, Freshdesk JSON error payloads
    (description / message / errors[] / code) and plain text.
    """
    text = response.text or ""
    stripped = text.strip()

    if stripped.startswith("<!DOCTYPE html>") or stripped.startswith("<html") or "File not found" in text:
        match = _TITLE_RE.search(text)
        if match and match.group(1).strip():
            return f"Server Error: {match.group(1).strip()}"
        if "File not found" in text:
            return "Server Error: Endpoint not found (404). Check server configuration."
        return f"Server Error ({response.status}): The server returned an HTML page/text instead of JSON."

    try:
        data = response.json()
    except MalformedResponseError:
        data = None

    if isinstance(data, dict):
        if data.get("description"):
            return str(data["description"])
        if data.get("message"):
            return str(data["message"])
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(
                f"{e.get('field')}: {e.get('message')} ({e.get('code')})"
                for e in errors
                if isinstance(e, dict)
            )
        if data.get("code"):
            return f"Error Code: {data['code']}"

    clean = _TAG_RE.sub("", text)[:150].strip()
    if clean:
        return clean
    if response.reason:
        return f"{response.status} {response.reason}"
    return f"HTTP Error {response.status}"


def raise_for_api_error(response, context: str) -> None:
    """Raise the ApiError subclass matching a non-OK response."""
    detail = parse_api_error(response)
    status = response.status

    if status == 401:
        raise AuthenticationError(
            f"Authentication Failed: Ensure your API Key is correct. ({context})", status
        )
    if status == 403:
        raise AccessDeniedError(
            f"Access Denied: You do not have permission to access {context}.", status
        )
    if status == 429:
        raise RateLimitError(
            "Rate Limit Exceeded: Freshdesk is busy. Please try again in a minute.",
            retry_after=60,
        )
    if status == 404:
        raise NotFoundError(f"Not Found: The requested {context} could not be found.", status)
    if status >= 500:
        raise ServerError(
            f"Freshdesk System Error ({status}): Please try again later. ({detail})", status
        )
    raise ApiError(f"API Error ({status}): {detail}", status)
