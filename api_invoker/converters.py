"""Converters - Pluggable body encoders/decoders keyed by type and media type.

The decoder asks a ConverterRegistry for the first converter that can read
the declared return type from the response media type; the dispatcher asks it
for a writer when a payload is neither text nor bytes. Adding a converter
never requires touching the builder, dispatcher or decoder.

Built-in readers, in lookup order:
    None            -> DiscardConverter
    ResponseStream  -> StreamConverter (body left open, streamed by the caller)
    bytes           -> BytesConverter
    str             -> TextConverter
    JSON media type -> JsonConverter (validated into the declared type)
    XML media type  -> XmlConverter  (validated into the declared type)
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from functools import lru_cache
from typing import Any, Iterable, Protocol

from pydantic import TypeAdapter, ValidationError

from api_invoker.errors import ApiResultError, DecodeError, EncodeError
from api_invoker.response import RawResponse, ResponseStream

JSON_MEDIA_TYPE = "application/json"
XML_MEDIA_TYPE = "text/xml"

# Key names of the error envelope the upstream wraps into 2xx responses
RESULT_CODE_KEY = "errcode"
RESULT_MESSAGE_KEY = "errmsg"

# Serializes by runtime type, so nested models and dates need no schema
_ANY: TypeAdapter[Any] = TypeAdapter(Any)


def to_json(value: Any) -> str:
    """Canonical compact JSON for a request body.

    Raises:
        TypeError, ValueError: If the value has no JSON representation.
    """
    return json.dumps(
        _ANY.dump_python(value, mode="json", by_alias=True),
        ensure_ascii=False,
        separators=(",", ":"),
    )


def raise_for_result_code(payload: Any) -> None:
    """Raise ApiResultError if a decoded payload carries a non-zero error code."""
    if not isinstance(payload, dict):
        return
    code = payload.get(RESULT_CODE_KEY)
    if code in (None, 0, "0"):
        return
    try:
        code = int(code)
    except (TypeError, ValueError):
        return
    raise ApiResultError(code, str(payload.get(RESULT_MESSAGE_KEY, "")), payload)


def is_json_media_type(media_type: str, extra: Iterable[str] = ()) -> bool:
    return media_type == JSON_MEDIA_TYPE or media_type.endswith("+json") or media_type in extra


def is_xml_media_type(media_type: str) -> bool:
    return media_type in ("application/xml", "text/xml") or media_type.endswith("+xml")


@lru_cache(maxsize=256)
def _adapter(declared_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(declared_type)


def adapt(declared_type: Any, data: Any) -> Any:
    """Validate plain decoded data into the declared type.

    Raises:
        DecodeError: If the data does not fit the declared type.
    """
    if declared_type is Any:
        return data
    try:
        return _adapter(declared_type).validate_python(data)
    except ValidationError as e:
        raise DecodeError(f"Response does not match {declared_type!r}: {e}") from e


class MessageConverter(Protocol):
    # True when read() performs its own API error-code inspection
    checks_result_code: bool

    def can_read(self, declared_type: Any, media_type: str) -> bool: ...

    def read(self, declared_type: Any, response: RawResponse) -> Any: ...

    def can_write(self, value: Any, media_type: str) -> bool: ...

    def write(self, value: Any, media_type: str) -> bytes: ...


class _ReadOnlyConverter:
    checks_result_code = False

    def can_write(self, value: Any, media_type: str) -> bool:
        return False

    def write(self, value: Any, media_type: str) -> bytes:
        raise EncodeError(f"{type(self).__name__} does not write bodies")


class DiscardConverter(_ReadOnlyConverter):
    """Operations declared to return nothing."""

    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return declared_type is None or declared_type is type(None)

    def read(self, declared_type: Any, response: RawResponse) -> None:
        response.close()
        return None


class StreamConverter(_ReadOnlyConverter):
    """Hands the open body to the caller; used for media downloads."""

    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return declared_type is ResponseStream

    def read(self, declared_type: Any, response: RawResponse) -> ResponseStream:
        return ResponseStream(response)


class BytesConverter(_ReadOnlyConverter):
    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return declared_type is bytes

    def read(self, declared_type: Any, response: RawResponse) -> bytes:
        return response.read()


class TextConverter(_ReadOnlyConverter):
    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return declared_type is str

    def read(self, declared_type: Any, response: RawResponse) -> str:
        return response.read().decode(response.charset or "utf-8", errors="replace")


class JsonConverter:
    """JSON bodies, including upstreams that label JSON as text/plain."""

    checks_result_code = True

    def __init__(self, extra_media_types: Iterable[str] = ()) -> None:
        self.extra_media_types = frozenset(m.lower() for m in extra_media_types)

    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return is_json_media_type(media_type, self.extra_media_types)

    def read(self, declared_type: Any, response: RawResponse) -> Any:
        content = response.read()
        try:
            data = json.loads(content)
        except ValueError as e:
            raise DecodeError(f"Invalid JSON in response body: {e}") from e
        raise_for_result_code(data)
        return adapt(declared_type, data)

    def can_write(self, value: Any, media_type: str) -> bool:
        return is_json_media_type(media_type, self.extra_media_types)

    def write(self, value: Any, media_type: str) -> bytes:
        return to_json(value).encode("utf-8")


class XmlConverter(_ReadOnlyConverter):
    """XML bodies such as <xml><ToUserName>..</ToUserName></xml>.

    The document is parsed straight from the response stream and the root
    element's children become a dict, which is then validated into the
    declared type. Writing XML is not supported.
    """

    checks_result_code = True

    def can_read(self, declared_type: Any, media_type: str) -> bool:
        return is_xml_media_type(media_type)

    def read(self, declared_type: Any, response: RawResponse) -> Any:
        try:
            root = ET.parse(response.as_file()).getroot()
        except ET.ParseError as e:
            raise DecodeError(f"Invalid XML in response body: {e}") from e
        data = element_to_value(root)
        raise_for_result_code(data)
        return adapt(declared_type, data)


def element_to_value(element: ET.Element) -> dict[str, Any] | str | None:
    """Convert an element's content to plain data.

    Leaf elements become their stripped text (None when empty), including
    CDATA sections. Children are grouped by tag with namespaces stripped;
    a tag that repeats becomes a list. Attributes are ignored.
    """
    children = list(element)
    if not children:
        text = (element.text or "").strip()
        return text or None

    grouped: dict[str, list[Any]] = {}
    for child in children:
        tag = child.tag.split("}", 1)[1] if child.tag.startswith("{") else child.tag
        grouped.setdefault(tag, []).append(element_to_value(child))
    return {tag: values[0] if len(values) == 1 else values for tag, values in grouped.items()}


class ConverterRegistry:
    """Ordered converter lookup. First match wins."""

    def __init__(self, converters: Iterable[MessageConverter] = ()) -> None:
        self._converters: list[MessageConverter] = list(converters)

    @classmethod
    def default(cls, json_media_types: Iterable[str] = ()) -> ConverterRegistry:
        return cls([
            DiscardConverter(),
            StreamConverter(),
            BytesConverter(),
            TextConverter(),
            JsonConverter(json_media_types),
            XmlConverter(),
        ])

    def register(self, converter: MessageConverter, first: bool = False) -> None:
        """Add a converter. first=True lets it shadow the built-ins."""
        if first:
            self._converters.insert(0, converter)
        else:
            self._converters.append(converter)

    @property
    def converters(self) -> list[MessageConverter]:
        return list(self._converters)

    def find_reader(self, declared_type: Any, media_type: str) -> MessageConverter | None:
        for converter in self._converters:
            if converter.can_read(declared_type, media_type):
                return converter
        return None

    def find_writer(self, value: Any, media_type: str) -> MessageConverter | None:
        for converter in self._converters:
            if converter.can_write(value, media_type):
                return converter
        return None

    def is_json(self, media_type: str) -> bool:
        """True if any registered JSON converter claims this media type."""
        for converter in self._converters:
            if isinstance(converter, JsonConverter) and converter.can_read(Any, media_type):
                return True
        return False
