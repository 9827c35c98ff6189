"""Response Decoder - Converts successful raw responses into declared types."""

from __future__ import annotations

import json
import logging
from typing import Any

from api_invoker.converters import ConverterRegistry, raise_for_result_code
from api_invoker.errors import DecodeError
from api_invoker.response import RawResponse, ResponseStream

logger = logging.getLogger(__name__)


class ResponseDecoder:
    """Picks a converter for (declared type, media type) and runs it.

    The raw response is always closed before decode() returns or raises,
    except when the result is a ResponseStream: the open body then belongs to
    the caller.
    """

    def __init__(self, registry: ConverterRegistry | None = None) -> None:
        self._registry = registry or ConverterRegistry.default()

    @property
    def registry(self) -> ConverterRegistry:
        return self._registry

    def decode(self, raw: RawResponse, declared_type: Any) -> Any:
        """Decode a 2xx response.

        Raises:
            DecodeError: If no converter matches or the payload is malformed.
            ApiResultError: If the payload carries a non-zero API error code.
        """
        media_type = raw.media_type
        converter = self._registry.find_reader(declared_type, media_type)
        if converter is None:
            raw.close()
            raise DecodeError(
                f"No converter reads {declared_type!r} from '{media_type or 'no content type'}'"
            )
        logger.debug("Decoding %r from '%s' with %s", declared_type, media_type, type(converter).__name__)

        try:
            if not converter.checks_result_code and self._registry.is_json(media_type):
                self._check_result_code(raw)
            value = converter.read(declared_type, raw)
        except BaseException:
            raw.close()
            raise

        if not isinstance(value, ResponseStream):
            raw.close()
        return value

    @staticmethod
    def _check_result_code(raw: RawResponse) -> None:
        """Surface an error envelope sent where a non-JSON result was expected.

        Media downloads, for example, answer 200 with a JSON error document
        when the token has expired. The body is buffered for this check, and
        the converter then reads the buffered copy.
        """
        content = raw.read()
        try:
            payload = json.loads(content)
        except ValueError:
            # Labelled JSON but is not; the converter gets the raw bytes
            return
        raise_for_result_code(payload)
