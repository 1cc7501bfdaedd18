from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from main import (
    ROTATION_EPOCH,
    ROTATION_INTERVAL,
    app,
    get_http_client,
    get_now,
    get_settings,
    load_settings,
)

KEYS = {
    "GEMINI_API_KEY1": "key-one",
    "GEMINI_API_KEY2": "key-two",
    "GEMINI_API_KEY3": "key-three",
    "GEMINI_API_KEY4": "key-four",
}


def instant_for_slot(index: int, offset: timedelta = timedelta(0)) -> datetime:
    # a few hundred days after the epoch, at the start of an interval mapping to `index`
    return ROTATION_EPOCH + ROTATION_INTERVAL * (4 * 100 + index) + offset


def gemini_reply(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class FakeGemini:
    """Records outbound requests and answers with a canned response."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.body = gemini_reply("hello there")
        self.error = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, str):
            return httpx.Response(self.status_code, text=self.body)
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def gemini():
    return FakeGemini()


@pytest.fixture
def make_client(gemini):
    def _make(env=None, now=None):
        settings = load_settings(KEYS if env is None else env)
        instant = instant_for_slot(0) if now is None else now

        async def http_client():
            async with httpx.AsyncClient(transport=httpx.MockTransport(gemini)) as client:
                yield client

        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_now] = lambda: instant
        app.dependency_overrides[get_http_client] = http_client
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()
