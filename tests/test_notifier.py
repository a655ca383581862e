"""
Tests for summary webhook delivery.
"""

import json

import httpx
import pytest

from src.relay.config import get_config
from src.relay.notifier import SummaryNotifier
from src.relay.sessions import Session, Speaker


def _finished_session() -> Session:
    session = Session(call_id="CA1", started_at=1_700_000_000.0)
    session.append_transcript(Speaker.AGENT, "Hello, how can I help?")
    session.append_transcript(Speaker.CALLER, "I need a callback.")
    session.merge_fields({"name": "Mario", "urgency": 3})
    session.finish()
    return session


@pytest.mark.asyncio
async def test_notify_posts_summary_once():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = SummaryNotifier("https://hooks.example.com/summary", transport=httpx.MockTransport(handler))
    session = _finished_session()

    assert await notifier.notify(session) is True

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/summary"
    body = json.loads(request.content)
    assert body["callId"] == "CA1"
    assert body["startedAt"] == 1_700_000_000_000
    assert body["endedAt"] >= body["startedAt"]
    assert [entry["speaker"] for entry in body["transcript"]] == ["agent", "caller"]
    assert body["fields"] == {"name": "Mario", "urgency": 3}


@pytest.mark.asyncio
async def test_notify_does_not_retry_on_server_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    notifier = SummaryNotifier("https://hooks.example.com/summary", transport=httpx.MockTransport(handler))

    assert await notifier.notify(_finished_session()) is False
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_notify_swallows_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = SummaryNotifier("https://hooks.example.com/summary", transport=httpx.MockTransport(handler))

    assert await notifier.notify(_finished_session()) is False


@pytest.mark.asyncio
async def test_notify_without_url_is_skipped():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    notifier = SummaryNotifier("", transport=httpx.MockTransport(handler))

    assert await notifier.notify(_finished_session()) is False
    assert calls == []


def test_from_config():
    notifier = SummaryNotifier.from_config(get_config())
    assert notifier.url == "https://hooks.example.com/summary"
    assert notifier.timeout_seconds == 10.0
