"""Executor - Builds, dispatches and decodes one API call.

Per call: BUILD -> DISPATCH -> (2xx) DECODE -> value
                            -> (non-2xx) ResponseError

The Executor makes exactly one pass. Recovering from an expired token is a
separate policy, refresh_on_expired_token(), composed over InvocationResult
by TokenRefreshingExecutor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from api_invoker.builder import ACCESS_TOKEN_PARAM, RequestBuilder
from api_invoker.credentials import CredentialProvider
from api_invoker.decoder import ResponseDecoder
from api_invoker.dispatcher import Dispatcher
from api_invoker.errors import ApiResultError, InvokerError, ResponseError
from api_invoker.models import (
    DEFAULT_TOKEN_EXPIRED_CODES,
    FileKind,
    RequestDescriptor,
    ValueKind,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one invocation: a value, or the error that ended it."""

    value: Any = None
    error: InvokerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, or raise the error."""
        if self.error is not None:
            raise self.error
        return self.value


class Executor:
    """Sole entry point for invoking API operations.

    Usage:
        executor = Executor(builder, dispatcher, decoder)
        user = executor.execute(get_user, ["openid-1"])
    """

    def __init__(
        self,
        builder: RequestBuilder,
        dispatcher: Dispatcher,
        decoder: ResponseDecoder,
    ) -> None:
        self._builder = builder
        self._dispatcher = dispatcher
        self._decoder = decoder

    def execute(self, descriptor: RequestDescriptor, args: Sequence[Any] = ()) -> Any:
        """Invoke an operation.

        Raises:
            BindingError, SerializationError: The request could not be built.
            EncodeError, TransportError: The request could not be sent, or the
                response body could not be read off the connection.
            ResponseError: The upstream answered with a non-2xx status.
            DecodeError, ApiResultError: The response could not be turned into
                the declared return type.
        """
        with self._builder.build(descriptor, args) as request:
            token = request.url.params.get(ACCESS_TOKEN_PARAM)
            raw = self._dispatcher.dispatch(request)

        if not raw.is_success:
            try:
                body = raw.read()
            finally:
                raw.close()
            logger.debug("%s failed with HTTP %d", descriptor.name, raw.status_code)
            raise ResponseError(raw.status_code, body, dict(raw.headers))

        try:
            return self._decoder.decode(raw, descriptor.returns)
        except ApiResultError as e:
            e.access_token = token
            raise

    def try_execute(self, descriptor: RequestDescriptor, args: Sequence[Any] = ()) -> InvocationResult:
        """Like execute(), but returns invoker errors instead of raising them."""
        try:
            return InvocationResult(value=self.execute(descriptor, args))
        except InvokerError as e:
            return InvocationResult(error=e)


def is_token_expired(error: InvokerError | None, expired_codes: Iterable[int]) -> bool:
    return isinstance(error, ApiResultError) and error.code in set(expired_codes)


def refresh_on_expired_token(
    attempt: Callable[[], InvocationResult],
    credentials: CredentialProvider,
    expired_codes: Iterable[int] = DEFAULT_TOKEN_EXPIRED_CODES,
) -> InvocationResult:
    """Run attempt; if it failed on an expired token, invalidate and run it once more.

    The second result is returned as-is, whatever it is.
    """
    result = attempt()
    if not is_token_expired(result.error, expired_codes):
        return result

    logger.info("Access token rejected (%s), refreshing and retrying once", result.error)
    credentials.invalidate(result.error.access_token)
    return attempt()


def is_replayable(descriptor: RequestDescriptor) -> bool:
    """False if a call consumes a stream argument that cannot be sent twice.

    Path arguments are reopened on every build; streams, readers and
    prepared FormResources are closed after the first attempt.
    """
    return all(
        binding.kind != ValueKind.FILE or binding.file_kind == FileKind.PATH
        for binding in descriptor.parameters
    )


class TokenRefreshingExecutor:
    """Executor with the single expired-token retry applied.

    Operations whose arguments cannot be replayed are executed once; an
    expired-token error then reaches the caller, though the token is still
    invalidated so the next call fetches a fresh one.
    """

    def __init__(
        self,
        executor: Executor,
        credentials: CredentialProvider,
        expired_codes: Iterable[int] = DEFAULT_TOKEN_EXPIRED_CODES,
    ) -> None:
        self._executor = executor
        self._credentials = credentials
        self._expired_codes = frozenset(expired_codes)

    def try_execute(self, descriptor: RequestDescriptor, args: Sequence[Any] = ()) -> InvocationResult:
        if not is_replayable(descriptor):
            result = self._executor.try_execute(descriptor, args)
            if is_token_expired(result.error, self._expired_codes):
                self._credentials.invalidate(result.error.access_token)
            return result
        return refresh_on_expired_token(
            lambda: self._executor.try_execute(descriptor, args),
            self._credentials,
            self._expired_codes,
        )

    def execute(self, descriptor: RequestDescriptor, args: Sequence[Any] = ()) -> Any:
        return self.try_execute(descriptor, args).unwrap()
