"""Shared pytest fixtures for image engine tests."""

import os

# 测试期间只输出到控制台
os.environ.setdefault("LOG_TO_FILE", "0")

import base64
import json
from io import BytesIO
from typing import Callable, List

import httpx
import pytest
from PIL import Image

from image_engine.config import AppConfig
from image_engine.models import GenerationRequest, ProviderConfig


@pytest.fixture(autouse=True)
def fast_backoff(monkeypatch):
    """Disable retry backoff and task polling delays so tests run instantly."""
    monkeypatch.setattr(AppConfig, "RETRY_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(AppConfig, "RATE_LIMIT_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(AppConfig, "KIE_POLL_INTERVAL_SECONDS", 0)


@pytest.fixture
def png_bytes() -> bytes:
    """A real 4x4 PNG image."""
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color=(30, 200, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture
def png_b64(png_bytes: bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


@pytest.fixture
def png_data_uri(png_b64: str) -> str:
    return f"data:image/png;base64,{png_b64}"


@pytest.fixture
def noise_png_bytes() -> bytes:
    """A 32x32 noise PNG whose base64 is well over 1000 characters."""
    buffer = BytesIO()
    Image.frombytes("RGB", (32, 32), os.urandom(32 * 32 * 3)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def large_png_data_uri(noise_png_bytes: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(noise_png_bytes).decode('ascii')}"


@pytest.fixture
def provider() -> ProviderConfig:
    return ProviderConfig(api_key="sk-test", base_url="https://relay.example.com")


@pytest.fixture
def make_request() -> Callable[..., GenerationRequest]:
    """Factory for generation requests with sensible defaults."""

    def factory(**overrides) -> GenerationRequest:
        params = {
            "prompt": "a red fox in the snow",
            "model": "gpt-image-1",
            "aspect_ratio": "1:1",
            "image_size": None,
            "count": 1,
        }
        params.update(overrides)
        return GenerationRequest(**params)

    return factory


def json_response(payload, status_code: int = 200):
    """Response factory returning a fresh JSON response per request."""
    return lambda request: httpx.Response(status_code, json=payload)


def text_response(text: str, status_code: int):
    return lambda request: httpx.Response(status_code, text=text)


def sse_body(events: List[dict], done: bool = True) -> bytes:
    """Encode events as an event-stream body."""
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def sse_response(events: List[dict]):
    body = sse_body(events)
    return lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


class RecordingHandler:
    """MockTransport handler that replays queued response factories per path and records requests.

    The last queued factory for a path is reused for any further requests.
    """

    def __init__(self):
        self.routes = {}
        self.requests: List[httpx.Request] = []

    def queue(self, path: str, *responses):
        self.routes.setdefault(path, []).extend(responses)
        return self

    def bodies(self, path: str) -> List[dict]:
        return [json.loads(request.content) for request in self.requests if request.url.path == path]

    def calls(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self.routes.get(request.url.path)
        if not queued:
            return httpx.Response(404, text="not found")
        factory = queued.pop(0) if len(queued) > 1 else queued[0]
        return factory(request)


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def transport(handler: RecordingHandler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)
