"""Tests for m2c.utils.api — status and stream error handling."""

import asyncio

import httpx
import pytest

from m2c.errors import ApiError, StreamError
from m2c.utils.sse import DEPLOY_EVENTS, VALIDATE_EVENTS


def _drain(api, vocabulary, **kwargs):
    async def run():
        return [event async for event in api.stream(vocabulary, **kwargs)]

    return asyncio.run(run())


class TestPipelineApi:
    def test_yields_events_and_sends_json(self, mock_config, service):
        service.on("/api/validate", [("log", {"message": "starting"}), ("result", {"result": {"passed": True}})])

        events = _drain(service.api(), VALIDATE_EVENTS, json={"url": "https://app"})

        assert [e.name for e in events] == ["log", "result"]
        assert service.bodies("/api/validate") == [{"url": "https://app"}]
        assert service.requests[0].method == "POST"

    def test_get_with_params(self, mock_config, service):
        service.on("/api/deploy", [("complete", {"url": "x"})])
        _drain(service.api(), DEPLOY_EVENTS, method="GET", params={"meeting": "Sprint 4"})
        assert service.requests[0].method == "GET"
        assert service.requests[0].url.params["meeting"] == "Sprint 4"

    def test_error_status_surfaces_server_message(self, mock_config, service):
        service.on("/api/deploy", status=500, error_body={"error": "Azure quota exceeded"})

        with pytest.raises(ApiError) as excinfo:
            _drain(service.api(), DEPLOY_EVENTS, fallback="Failed to start deployment")

        assert str(excinfo.value) == "Azure quota exceeded"
        assert excinfo.value.status_code == 500
        assert excinfo.value.path == "/api/deploy"

    def test_error_status_without_message_uses_fallback(self, mock_config, service):
        service.on("/api/deploy", status=502, error_body={})
        with pytest.raises(ApiError, match="Failed to start deployment"):
            _drain(service.api(), DEPLOY_EVENTS, fallback="Failed to start deployment")

    def test_error_frame_raises(self, mock_config, service):
        service.on("/api/deploy", [("log", {"message": "building"}), ("error", {"error": "build broke"})])
        with pytest.raises(StreamError, match="build broke"):
            _drain(service.api(), DEPLOY_EVENTS)

    def test_connection_failure_propagates(self, mock_config, service):
        service.fail("/api/deploy")
        with pytest.raises(httpx.ConnectError):
            _drain(service.api(), DEPLOY_EVENTS)

    def test_base_url_from_config(self, mock_config):
        from m2c.utils.api import PipelineApi

        api = PipelineApi()
        assert api.base_url == "http://m2c.test"
        assert api.timeout == 5
