"""Tests for api_invoker.credentials.

Tests cover:
- CachedTokenProvider: caching, refresh margin, invalidate, single refresher
- invalidate(token) leaves a token another caller already refreshed
- ClientCredentialFetcher: grant request shape and every failure mode
"""

import threading
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from api_invoker.credentials import CachedTokenProvider, ClientCredentialFetcher, TokenGrant
from api_invoker.errors import CredentialError

TOKEN_URL = "https://api.example.test/cgi-bin/token"


def grants(*tokens: str, expires_in: float = 7200) -> MagicMock:
    return MagicMock(side_effect=[TokenGrant(access_token=t, expires_in=expires_in) for t in tokens])


def fetcher_for(handler) -> ClientCredentialFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ClientCredentialFetcher(client, TOKEN_URL, "wx-app", "s3cret")


class TestCachedTokenProvider:
    def test_token_cached(self) -> None:
        fetch = grants("t-1", "t-2")
        provider = CachedTokenProvider(fetch)
        assert provider.get_token() == "t-1"
        assert provider.get_token() == "t-1"
        assert fetch.call_count == 1

    def test_invalidate_forces_fetch(self) -> None:
        fetch = grants("t-1", "t-2")
        provider = CachedTokenProvider(fetch)
        provider.get_token()
        provider.invalidate()
        assert provider.get_token() == "t-2"
        assert fetch.call_count == 2

    def test_invalidate_matching_token(self) -> None:
        fetch = grants("t-1", "t-2")
        provider = CachedTokenProvider(fetch)
        provider.get_token()
        provider.invalidate("t-1")
        assert provider.get_token() == "t-2"
        assert fetch.call_count == 2

    def test_invalidate_replaced_token_keeps_current(self) -> None:
        """Two callers rejected with t-1; the second must not drop t-2."""
        fetch = grants("t-1", "t-2", "t-3")
        provider = CachedTokenProvider(fetch)
        provider.get_token()
        provider.invalidate("t-1")
        assert provider.get_token() == "t-2"

        provider.invalidate("t-1")
        assert provider.get_token() == "t-2"
        assert fetch.call_count == 2

    def test_invalidate_with_nothing_cached(self) -> None:
        fetch = grants("t-1")
        provider = CachedTokenProvider(fetch)
        provider.invalidate("t-0")
        provider.invalidate()
        assert provider.get_token() == "t-1"
        assert fetch.call_count == 1

    def test_refreshed_inside_margin(self) -> None:
        fetch = grants("t-1", "t-2", expires_in=7200)
        provider = CachedTokenProvider(fetch, refresh_margin=300)
        with patch("api_invoker.credentials.time.monotonic") as monotonic:
            monotonic.return_value = 1000.0
            assert provider.get_token() == "t-1"

            monotonic.return_value = 1000.0 + 7200 - 301
            assert provider.get_token() == "t-1"

            monotonic.return_value = 1000.0 + 7200 - 300
            assert provider.get_token() == "t-2"

    def test_fetch_error_propagates_and_keeps_nothing(self) -> None:
        fetch = MagicMock(side_effect=[CredentialError("down"), TokenGrant(access_token="t-1")])
        provider = CachedTokenProvider(fetch)
        with pytest.raises(CredentialError):
            provider.get_token()
        assert provider.get_token() == "t-1"

    def test_concurrent_callers_share_one_fetch(self) -> None:
        calls: list[int] = []

        def slow_fetch() -> TokenGrant:
            calls.append(1)
            time.sleep(0.05)
            return TokenGrant(access_token="t-1")

        provider = CachedTokenProvider(slow_fetch)
        results: list[str] = []
        threads = [
            threading.Thread(target=lambda: results.append(provider.get_token()))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == ["t-1"] * 8
        assert len(calls) == 1


class TestClientCredentialFetcher:
    def test_grant_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                content=b'{"access_token": "ACCESS", "expires_in": 7200}',
                headers={"Content-Type": "application/json"},
            )

        grant = fetcher_for(handler)()
        assert grant == TokenGrant(access_token="ACCESS", expires_in=7200)
        params = seen[0].url.params
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/cgi-bin/token"
        assert params["grant_type"] == "client_credential"
        assert params["appid"] == "wx-app"
        assert params["secret"] == "s3cret"

    def test_error_document(self) -> None:
        fetcher = fetcher_for(
            lambda r: httpx.Response(200, content=b'{"errcode": 40013, "errmsg": "invalid appid"}')
        )
        with pytest.raises(CredentialError, match="40013"):
            fetcher()

    def test_http_error(self) -> None:
        with pytest.raises(CredentialError, match="HTTP 500"):
            fetcher_for(lambda r: httpx.Response(500))()

    def test_invalid_json(self) -> None:
        with pytest.raises(CredentialError, match="invalid JSON"):
            fetcher_for(lambda r: httpx.Response(200, content=b"<html>"))()

    def test_missing_token(self) -> None:
        with pytest.raises(CredentialError, match="Unexpected token payload"):
            fetcher_for(lambda r: httpx.Response(200, content=b'{"expires_in": 7200}'))()

    def test_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CredentialError, match="Token request failed"):
            fetcher_for(handler)()
