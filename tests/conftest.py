"""Shared test fixtures for oauthpipe.

Provides HTTP fakes built on :class:`httpx.MockTransport`, an executor that
never really sleeps, and small configuration builders.  These fixtures are
automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import json
from typing import Any, Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from oauthpipe.executor import RequestExecutor
from oauthpipe.log import reset_logging
from oauthpipe.models import FetchRecord, Ledger, RequestRecord

Handler = Callable[[httpx.Request], httpx.Response]


# ---------------------------------------------------------------------------
# Logging state
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging_between_tests() -> None:
    """Remove any Rich handler a test installed."""
    yield
    reset_logging()


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------


def json_response(data: Any, status_code: int = 200) -> httpx.Response:
    """Build an httpx.Response with JSON content."""
    return httpx.Response(status_code=status_code, json=data)


def text_response(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code=status_code, text=text)


def fresh(response: httpx.Response) -> httpx.Response:
    """A copy of a canned response, so one instance can answer several requests."""
    return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def make_executor(handler: Handler) -> RequestExecutor:
    """An executor whose requests are answered by *handler* and whose sleeps return at once."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RequestExecutor(client=client, sleep=AsyncMock())


def body_of(request: httpx.Request) -> Any:
    """Decode a JSON request body."""
    return json.loads(request.content.decode("utf-8"))


class Recorder:
    """MockTransport handler that records requests and answers from a route table.

    Routes map ``"METHOD url-prefix"`` (or just a URL prefix) to a response
    or a callable producing one.
    """

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for key, answer in self.routes.items():
            method, _, prefix = key.rpartition(" ")
            if method and method != request.method:
                continue
            if url.startswith(prefix):
                return answer(request) if callable(answer) else fresh(answer)
        return httpx.Response(404, json={"error": f"no route for {request.method} {url}"})

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]


@pytest.fixture
def recorder_factory() -> Callable[[dict[str, Any]], Recorder]:
    return Recorder


# ---------------------------------------------------------------------------
# Ledger fixtures
# ---------------------------------------------------------------------------


def record(response: Any, **request: Any) -> FetchRecord:
    return FetchRecord(request=RequestRecord(**request), response=response)


@pytest.fixture
def token_ledger() -> Ledger:
    """A ledger holding one completed ``step1`` whose response carries a token."""
    ledger = Ledger()
    ledger.append(
        "step1",
        record(
            {"token": "T", "nested": {"id": 42, "flag": True}},
            method="GET",
            url="https://provider.test/step1?client_id=abc",
            url_params={"client_id": "abc"},
            headers={"Accept": "application/json"},
        ),
    )
    return ledger
