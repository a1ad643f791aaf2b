"""Tests for the team.accessLogs page fetcher."""

from unittest.mock import MagicMock

import pytest
import requests

from access_log_client import (
    APIError,
    AccessLogsClient,
    ParseError,
    RateLimiter,
    TransportError,
    parse_page_payload,
    parse_retry_after_seconds,
)


def make_response(status_code=200, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.reason = "Reason"
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def ok_payload(logins=None, page=1, pages=1):
    return {"ok": True, "logins": logins or [], "paging": {"count": 1000, "total": 0, "page": page, "pages": pages}}


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    limiter = RateLimiter(max_calls=1000, period_seconds=60, time_func=lambda: 0.0, sleep_func=sleeps.append)
    instance = AccessLogsClient(
        token="xoxp-test",
        api_url="https://slack.test/api/team.accessLogs",
        page_size=2,
        rate_limiter=limiter,
        max_retries=3,
        retry_sleep_seconds=1.5,
        sleep_func=sleeps.append,
    )
    instance.session = MagicMock()
    return instance


class TestFetchPage:
    def test_sends_paging_parameters(self, client):
        client.session.get.return_value = make_response(payload=ok_payload())
        client.fetch_page(before=1609459200, page=3)
        args, kwargs = client.session.get.call_args
        assert args[0] == "https://slack.test/api/team.accessLogs"
        assert kwargs["params"] == {"before": 1609459200, "count": 2, "page": 3}
        assert kwargs["timeout"] == 60

    def test_sets_bearer_token(self):
        instance = AccessLogsClient(token="xoxp-secret")
        assert instance.session.headers["Authorization"] == "Bearer xoxp-secret"

    def test_close_releases_session(self, client):
        client.close()
        client.session.close.assert_called_once_with()

    def test_parses_records_and_paging(self, client, make_login):
        logins = [make_login("alice", 1609459100), make_login("bob", 1609459000)]
        client.session.get.return_value = make_response(payload=ok_payload(logins, page=1, pages=3))
        result = client.fetch_page(before=1609459200, page=1)
        assert [record.username for record in result.records] == ["alice", "bob"]
        assert result.page == 1
        assert result.pages == 3
        assert result.has_more is True

    def test_last_page_has_no_more(self, client):
        client.session.get.return_value = make_response(payload=ok_payload(page=3, pages=3))
        assert client.fetch_page(before=1, page=3).has_more is False

    def test_empty_window_has_no_more(self, client):
        client.session.get.return_value = make_response(payload=ok_payload(page=1, pages=0))
        result = client.fetch_page(before=1, page=1)
        assert result.records == []
        assert result.has_more is False

    def test_ok_false_raises_api_error(self, client):
        client.session.get.return_value = make_response(payload={"ok": False, "error": "invalid_auth"})
        with pytest.raises(APIError, match="invalid_auth") as excinfo:
            client.fetch_page(before=1609459200, page=1)
        assert excinfo.value.before == 1609459200
        assert excinfo.value.page == 1
        assert client.session.get.call_count == 1

    def test_ok_false_without_message(self, client):
        client.session.get.return_value = make_response(payload={"ok": False})
        with pytest.raises(APIError, match="unknown_error"):
            client.fetch_page(before=1, page=1)

    def test_unauthorized_status_is_not_retried(self, client):
        client.session.get.return_value = make_response(status_code=401, text="not_authed")
        with pytest.raises(APIError, match="HTTP 401") as excinfo:
            client.fetch_page(before=1, page=1)
        assert excinfo.value.status_code == 401
        assert client.session.get.call_count == 1

    def test_server_errors_are_retried_then_fatal(self, client, sleeps):
        client.session.get.return_value = make_response(status_code=503, text="unavailable")
        with pytest.raises(APIError, match="HTTP 503"):
            client.fetch_page(before=1, page=2)
        assert client.session.get.call_count == 3
        assert sleeps == [1.5, 3.0]

    def test_rate_limited_response_honors_retry_after(self, client, sleeps):
        client.session.get.side_effect = [
            make_response(status_code=429, headers={"Retry-After": "30"}),
            make_response(payload=ok_payload()),
        ]
        result = client.fetch_page(before=1, page=1)
        assert result.has_more is False
        assert sleeps == [30.0]

    def test_connection_error_becomes_transport_error(self, client):
        client.session.get.side_effect = requests.ConnectionError("connection refused")
        with pytest.raises(TransportError, match="connection refused") as excinfo:
            client.fetch_page(before=5, page=4)
        assert excinfo.value.page == 4
        assert client.session.get.call_count == 3

    def test_transient_timeout_recovers(self, client, make_login):
        client.session.get.side_effect = [
            requests.Timeout("read timed out"),
            make_response(payload=ok_payload([make_login("alice", 10)])),
        ]
        result = client.fetch_page(before=100, page=1)
        assert len(result.records) == 1

    def test_single_attempt_aborts_immediately(self, client):
        client.max_retries = 1
        client.session.get.side_effect = requests.ConnectionError("down")
        with pytest.raises(TransportError):
            client.fetch_page(before=1, page=1)
        assert client.session.get.call_count == 1

    def test_invalid_json_raises_parse_error(self, client):
        client.session.get.return_value = make_response(payload=ValueError("Expecting value"))
        with pytest.raises(ParseError, match="not valid JSON"):
            client.fetch_page(before=1, page=1)

    def test_every_attempt_takes_a_rate_limit_slot(self, client):
        client.session.get.side_effect = [
            make_response(status_code=500),
            make_response(payload=ok_payload()),
        ]
        client.fetch_page(before=1, page=1)
        assert client.rate_limiter._count == 2
        assert client.calls_made == 2

    def test_rejects_zero_retries(self):
        with pytest.raises(ValueError):
            AccessLogsClient(token="t", max_retries=0)


class TestParsePagePayload:
    def test_requires_object(self):
        with pytest.raises(ParseError, match="not a JSON object"):
            parse_page_payload([], before=1, page=1)

    def test_requires_boolean_ok(self):
        with pytest.raises(ParseError, match="boolean 'ok'"):
            parse_page_payload({"ok": "yes"}, before=1, page=1)

    def test_requires_logins_list(self):
        with pytest.raises(ParseError, match="'logins'"):
            parse_page_payload({"ok": True, "paging": {"page": 1, "pages": 1}}, before=1, page=1)

    def test_requires_paging(self):
        with pytest.raises(ParseError, match="'paging'"):
            parse_page_payload({"ok": True, "logins": []}, before=1, page=1)

    def test_requires_integer_paging_values(self):
        payload = {"ok": True, "logins": [], "paging": {"page": "1", "pages": 2}}
        with pytest.raises(ParseError, match="paging.page"):
            parse_page_payload(payload, before=1, page=1)

    def test_malformed_login_raises_parse_error(self):
        payload = {"ok": True, "logins": [{"ip": "10.0.0.1"}], "paging": {"page": 1, "pages": 1}}
        with pytest.raises(ParseError, match=r"logins\[0\]"):
            parse_page_payload(payload, before=1, page=1)


class TestRetryAfter:
    def test_numeric(self):
        assert parse_retry_after_seconds("12") == 12.0

    def test_missing_or_invalid(self):
        assert parse_retry_after_seconds(None) == 0.0
        assert parse_retry_after_seconds("  ") == 0.0
        assert parse_retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
