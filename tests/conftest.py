"""Shared fixtures for the m2c test suite."""

import json
from unittest.mock import patch

import httpx
import pytest

from m2c.event_bus import EventBus, Events, StageActions
from m2c.store import create_store
from m2c.utils.api import PipelineApi
from m2c.utils.sse import encode_event


class FakeService:
    """Stands in for the pipeline service behind an httpx.MockTransport.

    ``on(path, events)`` answers ``path`` with a streamed body; ``events`` is a
    list of ``(name, data)`` pairs or a callable taking the parsed JSON body
    and returning one. ``fail(path)`` makes the connection itself fail.
    """

    def __init__(self):
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def on(self, path, events=(), status=200, error_body=None):
        self.routes[path] = ("ok" if status < 400 else "status", events, status, error_body)

    def fail(self, path, message="connection refused"):
        self.routes[path] = ("raise", (), 0, message)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind, events, status, extra = self.routes[request.url.path]
        if kind == "raise":
            raise httpx.ConnectError(extra, request=request)
        if kind == "status":
            return httpx.Response(status, json=extra if extra is not None else {})
        if callable(events):
            events = events(self.body(request))
        content = b"".join(encode_event(name, data) for name, data in events)
        return httpx.Response(200, content=content, headers={"content-type": "text/event-stream"})

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content) if request.content else {}

    def bodies(self, path) -> list[dict]:
        return [self.body(r) for r in self.requests if r.url.path == path]

    def api(self) -> PipelineApi:
        return PipelineApi(base_url="http://m2c.test", transport=httpx.MockTransport(self.handler))


@pytest.fixture
def mock_config():
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "base_url": "http://m2c.test",
        "request_timeout": 5,
        "default_executor": "local",
        "verify_gap_id_base": 9000,
        "match_prefix_chars": 40,
        "activity_feed_limit": 50,
    }
    with patch("m2c.config._config", test_config):
        yield test_config


@pytest.fixture
def store():
    return create_store()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def actions():
    return StageActions()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def toasts(bus):
    """Every advisory emitted on ``bus``, in order."""
    received = []
    bus.on(Events.TOAST, received.append)
    return received


@pytest.fixture
def console(mock_config, service, bus):
    from m2c.console import Console

    return Console(api=service.api(), bus=bus)


@pytest.fixture
def requirements():
    return [
        "Users can reset their password by email",
        "The dashboard shows weekly revenue totals",
        "Export reports as CSV",
        "Admins can deactivate accounts",
        "Search results load in under one second",
    ]


def _make_gap(gap_id, requirement, has_gap=True, selected=True, source="analyze"):
    return {
        "id": gap_id,
        "requirement": requirement,
        "hasGap": has_gap,
        "gap": "Missing implementation" if has_gap else "No gap",
        "currentState": "",
        "complexity": "Medium",
        "estimatedEffort": "1 day",
        "details": "",
        "selected": selected,
        "source": source,
        "requirementIndex": gap_id - 1,
    }


@pytest.fixture
def make_gap():
    """Factory for board gap items."""
    return _make_gap

