"""Request Builder - Turns a descriptor plus arguments into a BuiltRequest.

Steps, in order:
1. Resolve the URL template from PATH/QUERY bindings.
2. Overwrite the access_token query parameter with a fresh token.
3. Encode the body according to the descriptor's body mode.
4. Set Content-Type for JSON and XML bodies.

File-like arguments are owned by the builder from the moment build() is
called: they end up on the BuiltRequest (closed by whoever dispatches it) or,
if build() fails, are closed before the error propagates.
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Sequence
from urllib.parse import quote

import httpx

from api_invoker.converters import JSON_MEDIA_TYPE, XML_MEDIA_TYPE, to_json
from api_invoker.credentials import CredentialProvider
from api_invoker.errors import BindingError, SerializationError, SerializationWarning
from api_invoker.form import FormFields, FormResource, close_file_argument
from api_invoker.models import (
    BODY_ROLES,
    FORM_ROLES,
    URL_ROLES,
    BodyMode,
    HttpMethod,
    ParameterBinding,
    ParameterRole,
    RequestDescriptor,
    SerializationFailurePolicy,
    ValueKind,
)

logger = logging.getLogger(__name__)

# Reserved query parameter carrying the credential. Templates may contain a
# {access_token} placeholder; it is always blanked and replaced by the token.
ACCESS_TOKEN_PARAM = "access_token"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def scalar_text(value: Any) -> str:
    """Text form of a scalar argument for URLs, form fields and scalar bodies."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return scalar_text(value.value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


@dataclass
class BuiltRequest:
    """One outbound request, built fresh per call.

    Embeds a point-in-time token, so it is never reused. resources are the
    file parts this request owns; close() releases each exactly once.
    """

    method: HttpMethod
    url: httpx.URL
    headers: dict[str, str] = field(default_factory=dict)
    payload: Any = None
    resources: list[FormResource] = field(default_factory=list)
    operation: str = ""

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "")

    @property
    def redacted_url(self) -> str:
        """URL without the access token, safe for logs."""
        return str(self.url.copy_remove_param(ACCESS_TOKEN_PARAM))

    def close(self) -> None:
        for resource in self.resources:
            resource.close()

    def __enter__(self) -> BuiltRequest:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class RequestBuilder:
    """Builds requests for any descriptor. Holds no per-call state."""

    def __init__(
        self,
        credentials: CredentialProvider,
        base_url: str | None = None,
        serialization_failure: SerializationFailurePolicy = SerializationFailurePolicy.DEGRADE,
    ) -> None:
        self._credentials = credentials
        self._base_url = httpx.URL(base_url) if base_url else None
        self._serialization_failure = SerializationFailurePolicy(serialization_failure)

    def build(self, descriptor: RequestDescriptor, args: Sequence[Any]) -> BuiltRequest:
        """Build a request.

        Raises:
            BindingError: If an argument is missing or a name cannot be resolved,
                or the body mode needs a body parameter and none qualifies.
            SerializationError: If a JSON body fails to serialize under the
                fail policy.
            CredentialError: If the token provider cannot supply a token.
        """
        if len(args) < descriptor.arity:
            self._close_file_arguments(descriptor, args, {})
            raise BindingError(
                f"{descriptor.name}: expected {descriptor.arity} arguments, got {len(args)}"
            )

        resources: dict[int, FormResource] = {}
        try:
            for binding in descriptor.parameters:
                value = args[binding.position]
                if binding.kind == ValueKind.FILE and value is not None:
                    resources[binding.position] = FormResource.from_argument(
                        value, binding.file_kind, binding.field_name or f"arg{binding.position}"
                    )

            url = self._resolve_url(descriptor, args)
            url = url.copy_set_param(ACCESS_TOKEN_PARAM, self._credentials.get_token())
            headers, payload = self._build_body(descriptor, args, resources)
        except BaseException:
            self._close_file_arguments(descriptor, args, resources)
            raise

        return BuiltRequest(
            method=descriptor.http_method,
            url=url,
            headers=headers,
            payload=payload,
            resources=list(resources.values()),
            operation=descriptor.name,
        )

    # -------------------------------------------------------------------------
    # URL
    # -------------------------------------------------------------------------

    def _resolve_url(self, descriptor: RequestDescriptor, args: Sequence[Any]) -> httpx.URL:
        template = descriptor.url_template
        appended: list[tuple[str, str]] = []

        for binding in descriptor.parameters:
            if binding.role not in URL_ROLES:
                continue
            name = self._require_name(descriptor, binding)
            value = args[binding.position]
            placeholder = "{" + name + "}"

            if placeholder in template:
                if value is None and binding.role == ParameterRole.PATH:
                    raise BindingError(f"{descriptor.name}: path parameter '{name}' is None")
                template = template.replace(placeholder, quote(scalar_text(value), safe=""))
            elif binding.role == ParameterRole.PATH:
                raise BindingError(
                    f"{descriptor.name}: path parameter '{name}' has no placeholder in "
                    f"'{descriptor.url_template}'"
                )
            elif value is not None:
                values = value if isinstance(value, (list, tuple)) else [value]
                appended.extend((name, scalar_text(item)) for item in values)

        template = template.replace("{" + ACCESS_TOKEN_PARAM + "}", "")
        leftover = _PLACEHOLDER.search(template)
        if leftover:
            raise BindingError(
                f"{descriptor.name}: unresolved placeholder {leftover.group(0)} in "
                f"'{descriptor.url_template}'"
            )

        url = self._base_url.join(template) if self._base_url is not None else httpx.URL(template)
        for name, text in appended:
            url = url.copy_add_param(name, text)
        return url

    # -------------------------------------------------------------------------
    # Body
    # -------------------------------------------------------------------------

    def _build_body(
        self,
        descriptor: RequestDescriptor,
        args: Sequence[Any],
        resources: dict[int, FormResource],
    ) -> tuple[dict[str, str], Any]:
        if descriptor.body_mode == BodyMode.JSON:
            return {"Content-Type": JSON_MEDIA_TYPE}, self._json_body(descriptor, args)
        if descriptor.body_mode == BodyMode.XML:
            return {"Content-Type": XML_MEDIA_TYPE}, self._xml_body(descriptor, args)
        if descriptor.body_mode == BodyMode.FORM:
            # multipart/urlencoded Content-Type comes from the form encoding
            return {}, self._form_body(descriptor, args, resources)
        return {}, None

    def _body_binding(self, descriptor: RequestDescriptor) -> ParameterBinding:
        """First binding with a body role, or first complex non-URL binding."""
        for binding in descriptor.parameters:
            if binding.role in BODY_ROLES:
                return binding
            if binding.kind == ValueKind.COMPLEX and binding.role not in URL_ROLES:
                return binding
        raise BindingError(
            f"{descriptor.name}: no parameter can be sent as the "
            f"{descriptor.body_mode.value} body"
        )

    def _json_body(self, descriptor: RequestDescriptor, args: Sequence[Any]) -> str | None:
        binding = self._body_binding(descriptor)
        value = args[binding.position]
        if binding.is_simple_scalar:
            return scalar_text(value)
        return self._serialize(descriptor, value)

    def _xml_body(self, descriptor: RequestDescriptor, args: Sequence[Any]) -> Any:
        binding = self._body_binding(descriptor)
        value = args[binding.position]
        if binding.is_simple_scalar:
            return scalar_text(value)
        # No XML serialization: the object goes to the dispatcher as-is and
        # needs a registered converter that can write it.
        return value

    def _form_body(
        self,
        descriptor: RequestDescriptor,
        args: Sequence[Any],
        resources: dict[int, FormResource],
    ) -> FormFields:
        fields = FormFields()
        for binding in descriptor.parameters:
            if binding.role in URL_ROLES:
                continue
            if binding.role not in FORM_ROLES and binding.is_simple_scalar:
                continue
            name = self._require_name(descriptor, binding)
            value = args[binding.position]

            if binding.kind == ValueKind.FILE:
                if binding.position in resources:
                    fields.add(name, resources[binding.position])
            elif value is None:
                continue
            elif binding.kind == ValueKind.COMPLEX:
                text = self._serialize(descriptor, value)
                if text is not None:
                    fields.add(name, text)
            elif isinstance(value, (list, tuple)):
                for item in value:
                    fields.add(name, scalar_text(item))
            else:
                fields.add(name, scalar_text(value))
        return fields

    def _serialize(self, descriptor: RequestDescriptor, value: Any) -> str | None:
        """JSON-encode value, applying the serialization failure policy."""
        try:
            return to_json(value)
        except (TypeError, ValueError) as e:
            if self._serialization_failure == SerializationFailurePolicy.FAIL:
                raise SerializationError(
                    f"{descriptor.name}: cannot serialize {type(value).__name__} to JSON: {e}"
                ) from e
            logger.error(
                "%s: cannot serialize %s to JSON, sending without it",
                descriptor.name,
                type(value).__name__,
                exc_info=True,
            )
            warnings.warn(
                f"{descriptor.name}: JSON serialization of {type(value).__name__} failed; "
                f"body omitted",
                SerializationWarning,
                stacklevel=4,
            )
            return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_name(descriptor: RequestDescriptor, binding: ParameterBinding) -> str:
        name = binding.field_name
        if not name:
            raise BindingError(
                f"{descriptor.name}: {binding.role.value} parameter at position "
                f"{binding.position} has neither a name nor an identifier"
            )
        return name

    @staticmethod
    def _close_file_arguments(
        descriptor: RequestDescriptor,
        args: Sequence[Any],
        resources: dict[int, FormResource],
    ) -> None:
        for resource in resources.values():
            resource.close()
        for binding in descriptor.parameters:
            if binding.kind != ValueKind.FILE or binding.position in resources:
                continue
            if binding.position < len(args) and args[binding.position] is not None:
                close_file_argument(args[binding.position])
