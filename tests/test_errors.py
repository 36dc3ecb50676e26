"""Tests for API error message parsing and status classification."""

import pytest

from freshdesk_activity.errors import (
    AccessDeniedError,
    ApiError,
    AuthenticationError,
    FreshdeskError,
    NotFoundError,
    RateLimitError,
    ServerError,
    parse_api_error,
    raise_for_api_error,
)
from freshdesk_activity.http_client import ApiResponse


def response(status, text="", content_type="application/json", reason=None):
    return ApiResponse(status=status, text=text, headers={"content-type": content_type}, reason=reason)


class TestParseApiError:

    def test_html_title_is_used(self):
        html = "<!DOCTYPE html><html><head><title>502 Bad Gateway</title></head></html>"
        assert parse_api_error(response(502, html, "text/html")) == "Server Error: 502 Bad Gateway"

    def test_html_without_title(self):
        message = parse_api_error(response(500, "<html><body>oops</body></html>", "text/html"))
        assert "HTML page/text instead of JSON" in message

    def test_description_field(self):
        body = '{"description": "Validation failed", "errors": []}'
        assert parse_api_error(response(400, body)) == "Validation failed"

    def test_message_field(self):
        assert parse_api_error(response(400, '{"message": "Bad query"}')) == "Bad query"

    def test_errors_list(self):
        body = '{"errors": [{"field": "query", "message": "is invalid", "code": "invalid_value"}]}'
        assert parse_api_error(response(400, body)) == "query: is invalid (invalid_value)"

    def test_code_field(self):
        assert parse_api_error(response(403, '{"code": "access_denied"}')) == "Error Code: access_denied"

    def test_plain_text_is_trimmed(self):
        text = "x" * 400
        assert parse_api_error(response(500, text, "text/plain")) == "x" * 150

    def test_empty_body_falls_back_to_reason(self):
        assert parse_api_error(response(502, "", reason="Bad Gateway")) == "502 Bad Gateway"
        assert parse_api_error(response(502, "")) == "HTTP Error 502"


class TestRaiseForApiError:

    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, AuthenticationError),
            (403, AccessDeniedError),
            (404, NotFoundError),
            (500, ServerError),
            (503, ServerError),
            (400, ApiError),
        ],
    )
    def test_status_mapping(self, status, expected):
        with pytest.raises(expected) as exc_info:
            raise_for_api_error(response(status, '{"message": "x"}'), "Tickets")
        assert exc_info.value.status == status

    def test_429_maps_to_rate_limit_error(self):
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_api_error(response(429, "{}"), "Tickets")
        assert exc_info.value.retry_after == 60

    def test_messages_name_the_context(self):
        with pytest.raises(AccessDeniedError, match="Ticket Fields"):
            raise_for_api_error(response(403, "{}"), "Ticket Fields")

    def test_server_error_includes_detail(self):
        with pytest.raises(ServerError, match="database unavailable"):
            raise_for_api_error(response(500, '{"message": "database unavailable"}'), "Tickets")

    def test_every_error_is_a_freshdesk_error(self):
        for cls in (AuthenticationError, AccessDeniedError, NotFoundError, ServerError, ApiError):
            assert issubclass(cls, FreshdeskError)
        assert issubclass(RateLimitError, FreshdeskError)
