"""HTTP access to the pipeline service.

All seven endpoints answer with a streamed event body. ``PipelineApi.stream``
opens the request with httpx, turns a non-2xx answer into ``ApiError``
carrying the server's ``error`` string verbatim, and turns an ``event: error``
frame into ``StreamError``. Timeouts belong to httpx; nothing here retries.
"""

from collections.abc import AsyncIterator

import httpx

from m2c.config import get_config
from m2c.errors import ApiError, StreamError
from m2c.utils.sse import EventVocabulary, StreamEvent, iter_events


def _error_message(response: httpx.Response, fallback: str) -> str:
    """Pull the ``error`` string out of a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return fallback


class PipelineApi:
    """Thin streaming client. ``transport`` is injectable so tests can fake the service."""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        config = get_config()
        self.base_url = base_url or config["base_url"]
        self.timeout = timeout if timeout is not None else config.get("request_timeout", 600)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # One client per call: lanes run concurrently and the dashboard runs
        # each click on a fresh event loop.
        return httpx.AsyncClient(
            base_url=self.base_url,
            transport=self._transport,
            timeout=self.timeout,
        )

    async def stream(
        self,
        vocabulary: EventVocabulary,
        *,
        method: str = "POST",
        json: dict | None = None,
        params: dict | None = None,
        fallback: str = "Request failed",
    ) -> AsyncIterator[StreamEvent]:
        """Yield every event of ``vocabulary.endpoint`` except ``error``, which raises."""
        path = vocabulary.endpoint
        async with self._client() as client:
            async with client.stream(method, path, json=json, params=params) as response:
                if response.is_error:
                    await response.aread()
                    raise ApiError(_error_message(response, fallback), response.status_code, path)

                async for event in iter_events(response.aiter_bytes(), vocabulary):
                    if event.name == "error":
                        raise StreamError(event.data.get("error") or fallback)
                    yield event
