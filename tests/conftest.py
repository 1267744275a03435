"""Shared fixtures: a scripted fal.ai queue behind httpx.MockTransport."""

from typing import Any, Optional, Union

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from fal_gateway.openai.api import GatewayConfig, GatewayRuntime, app
from fal_gateway.openai.gateway import ModelRegistry
from fal_gateway.openai.queue import FalQueueClient, QueueSettings

FAL_KEY = "test-fal-key"
ACCESS_KEY = "test-access-key"
AUTH = {"Authorization": f"Bearer {ACCESS_KEY}"}
IMAGE_HOST = "v3.fal.media"

Scripted = Union[dict, httpx.Response, Exception]


def image_url(name: str) -> str:
    return f"https://{IMAGE_HOST}/files/{name}.png"


class FakeFal:
    """Answers submit, status, result and image download calls from a script.

    ``statuses`` is consumed one entry per status check; the last entry repeats.
    """

    def __init__(
        self,
        *,
        submit: Optional[httpx.Response] = None,
        statuses: Optional[list[Scripted]] = None,
        result: Optional[httpx.Response] = None,
        urls: Optional[list[str]] = None,
        images: Optional[dict[str, httpx.Response]] = None,
    ):
        urls = urls if urls is not None else [image_url("cat-1")]
        self.submit_response = submit or httpx.Response(200, json={"request_id": "req-1"})
        self.statuses: list[Scripted] = list(statuses or [{"status": "COMPLETED"}])
        self.result_response = result or httpx.Response(200, json={"images": [{"url": u} for u in urls]})
        self.images = images or {}
        self.calls: list[httpx.Request] = []

    def _next_status(self) -> Scripted:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.host == IMAGE_HOST:
            return self.images.get(str(request.url), httpx.Response(200, content=b"\x89PNG-fake"))
        if request.method == "POST":
            return self.submit_response
        if request.url.path.endswith("/status"):
            item = self._next_status()
            if isinstance(item, Exception):
                raise item
            if isinstance(item, dict):
                return httpx.Response(200, json=item)
            return item
        return self.result_response

    def calls_to(self, suffix: str) -> list[httpx.Request]:
        return [call for call in self.calls if call.url.path.endswith(suffix)]

    @property
    def status_calls(self) -> list[httpx.Request]:
        return self.calls_to("/status")

    @property
    def submitted(self) -> list[dict[str, Any]]:
        return [orjson.loads(call.content) for call in self.calls if call.method == "POST"]


def make_queue(fake: FakeFal, **settings: Any) -> FalQueueClient:
    settings.setdefault("poll_interval_seconds", 0)
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return FalQueueClient(http, FAL_KEY, QueueSettings(**settings))


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry.from_file()


@pytest.fixture
def binding(registry):
    return registry.resolve(None)


@pytest.fixture
def gateway():
    """Install a runtime backed by a FakeFal on the app and return a TestClient."""

    def _install(fake: Optional[FakeFal] = None, **overrides: Any):
        fake = fake or FakeFal()
        options = {"worker_access_key": ACCESS_KEY, "fal_api_key": FAL_KEY, "poll_interval_ms": 0}
        options.update(overrides)
        http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        app.state.runtime = GatewayRuntime.build(GatewayConfig(**options), http=http)
        return TestClient(app), fake

    yield _install
    app.state.runtime = None
