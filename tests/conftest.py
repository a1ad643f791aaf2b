"""Shared fixtures for the access-log exporter tests."""

from datetime import datetime, timezone

import pytest

from access_log_client import parse_page_payload


def _epoch(year, month, day, hour=0, minute=0):
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp())


def _login(username, date_last, **extra):
    entry = {
        "user_id": extra.pop("user_id", f"U{username.upper()}"),
        "username": username,
        "date_first": extra.pop("date_first", date_last),
        "date_last": date_last,
        "count": extra.pop("count", 1),
        "ip": extra.pop("ip", "203.0.113.7"),
        "user_agent": extra.pop("user_agent", "SlackWeb/4.0"),
        "isp": extra.pop("isp", "Example ISP"),
    }
    entry.update(extra)
    return entry


def _page(logins, page, pages):
    return {"ok": True, "logins": list(logins), "paging": {"page": page, "pages": pages}}


def _logged_before(entry, before):
    if not isinstance(entry, dict):
        return True
    stamp = entry.get("date_last") or entry.get("date_first")
    return not isinstance(stamp, int) or stamp < before


class ScriptedClient:
    """Serves canned team.accessLogs payloads keyed by (before, page).

    Like the real endpoint, logins at or after ``before`` are never returned.
    """

    def __init__(self, payloads=None, default=None):
        self.payloads = payloads or {}
        self.default = default
        self.calls = []
        self.closed = False

    def close(self):
        self.closed = True

    @property
    def calls_made(self):
        return len(self.calls)

    def fetch_page(self, before, page):
        self.calls.append((before, page))
        payload = self.payloads.get((before, page))
        if payload is None:
            if self.default is not None:
                payload = self.default(before, page)
            else:
                payload = _page([], page, 0)
        if isinstance(payload, dict) and isinstance(payload.get("logins"), list):
            payload = dict(payload, logins=[entry for entry in payload["logins"] if _logged_before(entry, before)])
        return parse_page_payload(payload, before=before, page=page)


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def epoch():
    return _epoch


@pytest.fixture
def make_login():
    return _login


@pytest.fixture
def make_page():
    return _page


@pytest.fixture
def scripted_client():
    return ScriptedClient
