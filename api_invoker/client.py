"""ApiClient - Wires configuration into a ready-to-use invoker.

    config = load_invoker_config(Path("invoker.yaml"))
    with ApiClient.from_config(config) as api:
        get_user = api.operation(GET_USER)
        user = get_user("openid-1")
"""

from __future__ import annotations

from typing import Any, Callable

import httpx

from api_invoker.builder import RequestBuilder
from api_invoker.converters import ConverterRegistry
from api_invoker.credentials import CachedTokenProvider, ClientCredentialFetcher, CredentialProvider
from api_invoker.decoder import ResponseDecoder
from api_invoker.dispatcher import Dispatcher
from api_invoker.executor import Executor, InvocationResult, TokenRefreshingExecutor
from api_invoker.models import InvokerConfig, RequestDescriptor


class ApiClient:
    """Calls declared operations with the expired-token retry applied."""

    def __init__(self, executor: TokenRefreshingExecutor, dispatcher: Dispatcher | None = None) -> None:
        self._executor = executor
        self._dispatcher = dispatcher

    @classmethod
    def from_config(
        cls,
        config: InvokerConfig,
        credentials: CredentialProvider | None = None,
        registry: ConverterRegistry | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> ApiClient:
        """Build the full stack from config.

        credentials defaults to a CachedTokenProvider running the
        client-credential grant over the same httpx client as API calls.
        transport replaces the network, e.g. httpx.MockTransport in tests.
        """
        registry = registry or ConverterRegistry.default(config.json_media_types)
        dispatcher = Dispatcher.from_config(config, registry, transport=transport)
        if credentials is None:
            fetcher = ClientCredentialFetcher(
                dispatcher.client,
                config.credential.token_url,
                config.credential.app_id,
                config.credential.app_secret,
            )
            credentials = CachedTokenProvider(fetcher, config.credential.refresh_margin_seconds)

        builder = RequestBuilder(credentials, config.base_url, config.serialization_failure)
        executor = Executor(builder, dispatcher, ResponseDecoder(registry))
        return cls(
            TokenRefreshingExecutor(executor, credentials, config.token_expired_codes),
            dispatcher,
        )

    def call(self, descriptor: RequestDescriptor, *args: Any) -> Any:
        return self._executor.execute(descriptor, args)

    def try_call(self, descriptor: RequestDescriptor, *args: Any) -> InvocationResult:
        return self._executor.try_execute(descriptor, args)

    def operation(self, descriptor: RequestDescriptor) -> Callable[..., Any]:
        """A plain function bound to one descriptor."""

        def invoke(*args: Any) -> Any:
            return self._executor.execute(descriptor, args)

        invoke.__name__ = descriptor.name
        invoke.__qualname__ = f"ApiClient.{descriptor.name}"
        return invoke

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
