"""Pytest configuration and fixtures for api-invoker tests.

This file provides:
- FakeCredentials: In-memory credential provider that rotates tokens on invalidate
- make_raw_response: RawResponse over an in-memory httpx.Response
- Fixtures: credentials, builder, registry and decoder shared by unit tests
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from api_invoker.builder import RequestBuilder
from api_invoker.converters import ConverterRegistry
from api_invoker.decoder import ResponseDecoder
from api_invoker.response import RawResponse

BASE_URL = "https://api.example.test"


class FakeCredentials:
    """Hands out token-1, token-2, ... advancing on invalidate().

    invalidate(token) with a token other than the current one is ignored,
    like CachedTokenProvider.
    """

    def __init__(self) -> None:
        self.generation = 1
        self.get_calls = 0
        self.invalidations = 0

    @property
    def current(self) -> str:
        return f"token-{self.generation}"

    def get_token(self) -> str:
        self.get_calls += 1
        return self.current

    def invalidate(self, token: str | None = None) -> None:
        if token is not None and token != self.current:
            return
        self.invalidations += 1
        self.generation += 1


def make_raw_response(
    status_code: int = 200,
    content: bytes | None = None,
    content_type: str | None = None,
    json_body: Any = None,
    headers: dict[str, str] | None = None,
) -> RawResponse:
    """Create a RawResponse for decoder and executor tests.

    json_body, when given, is encoded and labelled application/json unless
    content_type says otherwise.
    """
    all_headers = dict(headers or {})
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
        content_type = content_type or "application/json"
    if content_type:
        all_headers["Content-Type"] = content_type
    return RawResponse(httpx.Response(status_code, content=content or b"", headers=all_headers))


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def builder(credentials: FakeCredentials) -> RequestBuilder:
    return RequestBuilder(credentials, base_url=BASE_URL)


@pytest.fixture
def registry() -> ConverterRegistry:
    return ConverterRegistry.default(["text/plain"])


@pytest.fixture
def decoder(registry: ConverterRegistry) -> ResponseDecoder:
    return ResponseDecoder(registry)


@pytest.fixture
def raw_response_factory() -> Callable[..., RawResponse]:
    """Fixture form of make_raw_response for tests that prefer injection."""
    return make_raw_response


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
