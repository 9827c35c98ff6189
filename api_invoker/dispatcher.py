"""Dispatcher - Sends built requests over httpx and returns raw responses.

Requests are sent with stream=True: file parts are pulled from their streams
in chunks while the body is written, and the response body stays on the wire
until the decoder reads it. Status codes are passed through untouched.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from api_invoker.builder import BuiltRequest
from api_invoker.converters import ConverterRegistry
from api_invoker.errors import EncodeError, TransportError
from api_invoker.form import FormFields, FormResource
from api_invoker.models import InvokerConfig
from api_invoker.response import RawResponse

logger = logging.getLogger(__name__)


class Dispatcher:
    """Owns the httpx client used for API calls.

    Usage:
        with Dispatcher.from_config(config) as dispatcher:
            raw = dispatcher.dispatch(built_request)
    """

    def __init__(self, client: httpx.Client, registry: ConverterRegistry | None = None) -> None:
        self._client = client
        self._registry = registry or ConverterRegistry.default()

    @classmethod
    def from_config(
        cls,
        config: InvokerConfig,
        registry: ConverterRegistry | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> Dispatcher:
        client = httpx.Client(
            base_url=config.base_url,
            headers=config.headers,
            timeout=config.timeout,
            transport=transport,
        )
        return cls(client, registry or ConverterRegistry.default(config.json_media_types))

    @property
    def client(self) -> httpx.Client:
        return self._client

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def dispatch(self, request: BuiltRequest) -> RawResponse:
        """Send a request and return the unread response.

        Raises:
            BindingError: If a file argument cannot be opened.
            EncodeError: If the payload type has no encoding.
            TransportError: If the request fails due to connection/timeout.
        """
        http_request = self._prepare(request)
        logger.debug("%s %s %s", request.operation, request.method.value, request.redacted_url)

        try:
            http_response = self._client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"{request.operation} request timeout: {e}") from e
        except httpx.ConnectError as e:
            raise TransportError(f"{request.operation} connection error: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{request.operation} request error: {e}") from e

        logger.debug("%s answered HTTP %d", request.operation, http_response.status_code)
        return RawResponse(http_response)

    def _prepare(self, request: BuiltRequest) -> httpx.Request:
        """Map a BuiltRequest onto httpx.Client.build_request arguments."""
        kwargs: dict[str, Any] = {"headers": request.headers or None}
        payload = request.payload

        if payload is None:
            pass
        elif isinstance(payload, str):
            kwargs["content"] = payload.encode("utf-8")
        elif isinstance(payload, bytes):
            kwargs["content"] = payload
        elif isinstance(payload, FormFields):
            kwargs.update(self._form_kwargs(payload))
        else:
            writer = self._registry.find_writer(payload, request.content_type)
            if writer is None:
                raise EncodeError(
                    f"{request.operation}: no converter writes {type(payload).__name__} "
                    f"as '{request.content_type}'"
                )
            kwargs["content"] = writer.write(payload, request.content_type)

        return self._client.build_request(request.method.value, request.url, **kwargs)

    @staticmethod
    def _form_kwargs(fields: FormFields) -> dict[str, Any]:
        """Multipart when any field is a file, urlencoded otherwise.

        Multipart entries all go through files= as one list, plain fields as
        (None, value) parts without a filename, so the parts are written in
        insertion order. Urlencoded repeats are kept as lists.
        """
        if fields.has_files:
            parts: list[tuple[str, tuple[str | None, Any] | tuple[str, Any, str | None]]] = []
            for name, value in fields:
                if isinstance(value, FormResource):
                    parts.append((name, (value.filename, value.stream, value.content_type)))
                else:
                    parts.append((name, (None, value)))
            return {"files": parts}

        data: dict[str, list[str]] = {}
        for name, value in fields:
            data.setdefault(name, []).append(value)
        return {"data": data}
