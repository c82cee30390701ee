"""Tests for webhook notifications."""

import json
import threading
from datetime import datetime, timezone

import httpx

from ramguard.notify import WebhookNotifier

URL = "https://hooks.example.com/ram"
WHEN = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_notifier(handler) -> tuple[WebhookNotifier, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.Client(transport=httpx.MockTransport(record))
    return WebhookNotifier(URL, client=client, background=False), requests


def test_payload():
    """Test the ram_spike payload shape."""
    assert WebhookNotifier.ram_spike_payload(93.5, 612.4, WHEN) == {
        "event": "ram_spike",
        "ramPercent": 93.5,
        "freedMemoryMb": 612,
        "timestamp": "2026-01-01T12:00:00+00:00",
    }


def test_posts_json():
    """Test the payload is POSTed as JSON."""
    notifier, requests = make_notifier(lambda request: httpx.Response(204))

    notifier.notify_ram_spike(93.5, 600.0, WHEN)

    assert len(requests) == 1
    assert requests[0].method == "POST"
    assert str(requests[0].url) == URL
    assert json.loads(requests[0].content)["event"] == "ram_spike"


def test_http_error_is_swallowed():
    """Test a 5xx response does not raise."""
    notifier, _ = make_notifier(lambda request: httpx.Response(503))

    notifier.notify_ram_spike(93.5, 0.0, WHEN)

    assert notifier._post({"event": "ram_spike"}) is False


def test_transport_error_is_swallowed():
    """Test a connection failure does not raise."""

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier, _ = make_notifier(refuse)

    notifier.notify_ram_spike(93.5, 0.0, WHEN)

    assert notifier._post({"event": "ram_spike"}) is False


def test_background_delivery():
    """Test delivery on a worker thread."""
    delivered = threading.Event()

    def handler(request):
        delivered.set()
        return httpx.Response(200)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    WebhookNotifier(URL, client=client).notify_ram_spike(95.0, 10.0, WHEN)

    assert delivered.wait(timeout=2)
