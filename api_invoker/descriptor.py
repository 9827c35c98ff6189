"""Descriptor Builder - Declares operations at registration time.

Bindings are declared explicitly, one call per argument, so nothing about an
argument's role or shape is inferred at call time:

    upload_media = (
        DescriptorBuilder("upload_media", "POST", "/cgi-bin/media/upload", BodyMode.FORM)
        .query("type")
        .form_file("media", FileKind.PATH)
        .returns(MediaUploadResult)
        .build()
    )
    result = executor.execute(upload_media, ["image", Path("cat.jpg")])

Argument positions follow declaration order.
"""

from __future__ import annotations

from typing import Any

from api_invoker.models import (
    BodyMode,
    FileKind,
    HttpMethod,
    ParameterBinding,
    ParameterRole,
    RequestDescriptor,
    ValueKind,
)


class DescriptorBuilder:
    """Fluent builder for RequestDescriptor."""

    def __init__(
        self,
        name: str,
        method: HttpMethod | str,
        url_template: str,
        body_mode: BodyMode | str = BodyMode.NONE,
    ) -> None:
        self._name = name
        self._method = HttpMethod(method.upper() if isinstance(method, str) else method)
        self._url_template = url_template
        self._body_mode = BodyMode(body_mode)
        self._bindings: list[ParameterBinding] = []
        self._returns: Any = None

    def param(
        self,
        role: ParameterRole,
        name: str | None = None,
        *,
        identifier: str | None = None,
        kind: ValueKind = ValueKind.SCALAR,
        file_kind: FileKind | None = None,
    ) -> DescriptorBuilder:
        """Append a binding for the next argument position."""
        self._bindings.append(
            ParameterBinding(
                position=len(self._bindings),
                role=role,
                name=name,
                identifier=identifier,
                kind=kind,
                file_kind=file_kind,
            )
        )
        return self

    def path(self, name: str) -> DescriptorBuilder:
        return self.param(ParameterRole.PATH, name)

    def query(self, name: str, kind: ValueKind = ValueKind.SCALAR) -> DescriptorBuilder:
        return self.param(ParameterRole.QUERY, name, kind=kind)

    def json_body(self, kind: ValueKind = ValueKind.COMPLEX) -> DescriptorBuilder:
        return self.param(ParameterRole.JSON_BODY, kind=kind)

    def xml_body(self, kind: ValueKind = ValueKind.COMPLEX) -> DescriptorBuilder:
        return self.param(ParameterRole.XML_BODY, kind=kind)

    def form_field(
        self,
        name: str | None = None,
        *,
        identifier: str | None = None,
        kind: ValueKind = ValueKind.SCALAR,
    ) -> DescriptorBuilder:
        return self.param(ParameterRole.FORM_FIELD, name, identifier=identifier, kind=kind)

    def form_file(
        self,
        name: str | None = None,
        file_kind: FileKind = FileKind.STREAM,
        *,
        identifier: str | None = None,
    ) -> DescriptorBuilder:
        return self.param(
            ParameterRole.FORM_FILE,
            name,
            identifier=identifier,
            kind=ValueKind.FILE,
            file_kind=file_kind,
        )

    def returns(self, return_type: Any) -> DescriptorBuilder:
        self._returns = return_type
        return self

    def build(self) -> RequestDescriptor:
        """Freeze the declaration. Raises pydantic.ValidationError on bad bindings."""
        return RequestDescriptor(
            name=self._name,
            http_method=self._method,
            body_mode=self._body_mode,
            url_template=self._url_template,
            parameters=tuple(self._bindings),
            returns=self._returns,
        )
