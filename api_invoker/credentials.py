"""Credentials - Access token provider boundary and a caching implementation.

The executor only needs get_token() and invalidate(). CachedTokenProvider adds
the usual policy on top of a fetch callable: cache the grant, refresh it a
little before it expires, and let only one thread refresh at a time.
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from api_invoker.errors import CredentialError

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    def get_token(self) -> str: ...

    def invalidate(self, token: str | None = None) -> None:
        """Forget token (or whatever is cached, if None) so the next get_token() refreshes."""
        ...


class TokenGrant(BaseModel):
    """Token endpoint answer."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1, description="The access token")
    expires_in: float = Field(default=7200.0, gt=0, description="Lifetime in seconds")


class CachedTokenProvider:
    """Caches a TokenGrant and refreshes it lazily.

    The cached state is a single (token, expires_at) tuple swapped in one
    assignment, so readers see either the old or the new token.

    Usage:
        provider = CachedTokenProvider(fetcher, refresh_margin=300)
        token = provider.get_token()
    """

    def __init__(self, fetch: Callable[[], TokenGrant], refresh_margin: float = 300.0) -> None:
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._cached: tuple[str, float] | None = None
        self._refresh_lock = Lock()

    def get_token(self) -> str:
        cached = self._cached
        if cached is not None and not self._is_stale(cached):
            return cached[0]

        with self._refresh_lock:
            # Another thread may have refreshed while we waited
            cached = self._cached
            if cached is not None and not self._is_stale(cached):
                return cached[0]
            grant = self._fetch()
            expires_at = time.monotonic() + grant.expires_in
            self._cached = (grant.access_token, expires_at)
            logger.info("Access token refreshed, valid for %.0fs", grant.expires_in)
            return grant.access_token

    def invalidate(self, token: str | None = None) -> None:
        """Drop the cached token.

        With token given, only that token is dropped: if another caller has
        already replaced it, the fresh token is kept and no second grant is
        requested.
        """
        with self._refresh_lock:
            cached = self._cached
            if cached is None:
                return
            if token is not None and cached[0] != token:
                logger.debug("Rejected token already replaced, keeping the current one")
                return
            self._cached = None
        logger.info("Access token invalidated")

    def _is_stale(self, cached: tuple[str, float]) -> bool:
        return time.monotonic() >= cached[1] - self._refresh_margin


class ClientCredentialFetcher:
    """Fetches tokens with the client-credential grant.

    GET {token_url}?grant_type=client_credential&appid=...&secret=...
    answers {"access_token": "...", "expires_in": 7200} or an error document
    {"errcode": 40013, "errmsg": "invalid appid"}.
    """

    def __init__(self, client: httpx.Client, token_url: str, app_id: str, app_secret: str) -> None:
        self._client = client
        self._token_url = token_url
        self._app_id = app_id
        self._app_secret = app_secret

    def __call__(self) -> TokenGrant:
        try:
            response = self._client.get(
                self._token_url,
                params={
                    "grant_type": "client_credential",
                    "appid": self._app_id,
                    "secret": self._app_secret,
                },
            )
        except httpx.RequestError as e:
            raise CredentialError(f"Token request failed: {e}") from e

        if not response.is_success:
            raise CredentialError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise CredentialError(f"Token endpoint returned invalid JSON: {e}") from e

        if isinstance(payload, dict) and payload.get("errcode"):
            raise CredentialError(
                f"Token endpoint error {payload.get('errcode')}: {payload.get('errmsg', '')}"
            )

        try:
            return TokenGrant.model_validate(payload)
        except ValidationError as e:
            raise CredentialError(f"Unexpected token payload: {e}") from e
