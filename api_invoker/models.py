"""Internal data models for api-invoker.

All models use Pydantic v2. Descriptors and bindings are frozen: they are
built once at registration time and shared read-only by every invocation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Request Descriptor Models
# =============================================================================


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class BodyMode(str, Enum):
    """How the request body is encoded."""

    NONE = "none"
    JSON = "json"
    XML = "xml"
    FORM = "form"


class ParameterRole(str, Enum):
    """Where an argument ends up in the built request."""

    PATH = "path"
    QUERY = "query"
    JSON_BODY = "json_body"
    XML_BODY = "xml_body"
    FORM_FIELD = "form_field"
    FORM_FILE = "form_file"


class ValueKind(str, Enum):
    """Shape of an argument, decided when the descriptor is declared."""

    SCALAR = "scalar"  # str, number, bool, date
    COMPLEX = "complex"  # models, dicts, lists
    FILE = "file"  # anything streamable, see FileKind


class FileKind(str, Enum):
    """Which kind of file-like argument a FILE binding accepts."""

    RESOURCE = "resource"  # already a form.FormResource
    STREAM = "stream"  # binary file-like object
    PATH = "path"  # filesystem path, opened lazily
    READER = "reader"  # text stream, transcoded to UTF-8 on the fly


URL_ROLES = frozenset({ParameterRole.PATH, ParameterRole.QUERY})
BODY_ROLES = frozenset({ParameterRole.JSON_BODY, ParameterRole.XML_BODY})
FORM_ROLES = frozenset({ParameterRole.FORM_FIELD, ParameterRole.FORM_FILE})


class ParameterBinding(BaseModel):
    """One argument of an operation and the role it plays in the request.

    name is the explicit wire name. identifier is the declared argument name,
    used as a fallback when no explicit name is given.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    position: int = Field(ge=0, description="Index into the argument sequence")
    role: ParameterRole = Field(description="Role of the argument in the request")
    name: str | None = Field(default=None, description="Explicit wire name")
    identifier: str | None = Field(default=None, description="Declared argument name")
    kind: ValueKind = Field(default=ValueKind.SCALAR, description="Argument shape")
    file_kind: FileKind | None = Field(default=None, description="Set iff kind is FILE")

    @model_validator(mode="after")
    def check_kind(self) -> Self:
        if (self.kind == ValueKind.FILE) != (self.file_kind is not None):
            raise ValueError("file_kind must be set exactly when kind is 'file'")
        if self.role == ParameterRole.FORM_FILE and self.kind != ValueKind.FILE:
            raise ValueError("form_file bindings must have kind 'file'")
        return self

    @property
    def is_simple_scalar(self) -> bool:
        return self.kind == ValueKind.SCALAR

    @property
    def field_name(self) -> str | None:
        """Explicit name, else declared identifier, else None."""
        return self.name or self.identifier


class RequestDescriptor(BaseModel):
    """Pre-resolved metadata for one API operation.

    url_template may be absolute or relative to the configured base URL and
    uses {name} placeholders for path and query bindings.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    name: str = Field(description="Operation name, used in logs")
    http_method: HttpMethod = Field(description="HTTP method")
    body_mode: BodyMode = Field(default=BodyMode.NONE, description="Body encoding")
    url_template: str = Field(description="URL with {name} placeholders")
    parameters: tuple[ParameterBinding, ...] = Field(
        default=(), description="Bindings in declaration order"
    )
    returns: Any = Field(default=None, description="Declared return type")

    @model_validator(mode="after")
    def check_bindings(self) -> Self:
        positions = [p.position for p in self.parameters]
        if len(positions) != len(set(positions)):
            raise ValueError("parameter positions must be unique")

        body_bindings = [p for p in self.parameters if p.role in BODY_ROLES]
        if len(body_bindings) > 1:
            raise ValueError("at most one json_body/xml_body binding is allowed")

        for binding in self.parameters:
            if binding.role == ParameterRole.JSON_BODY and self.body_mode != BodyMode.JSON:
                raise ValueError("json_body binding requires body_mode 'json'")
            if binding.role == ParameterRole.XML_BODY and self.body_mode != BodyMode.XML:
                raise ValueError("xml_body binding requires body_mode 'xml'")
            if binding.role in FORM_ROLES and self.body_mode != BodyMode.FORM:
                raise ValueError(f"{binding.role.value} binding requires body_mode 'form'")
        return self

    @property
    def arity(self) -> int:
        """Minimum number of arguments an invocation must supply."""
        return max((p.position for p in self.parameters), default=-1) + 1


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class SerializationFailurePolicy(str, Enum):
    """What the builder does when a JSON body cannot be serialized."""

    DEGRADE = "degrade"  # log, warn, send without a body
    FAIL = "fail"  # raise SerializationError


DEFAULT_TOKEN_EXPIRED_CODES = [40001, 40014, 42001]


class CredentialConfig(BaseModel):
    """Client-credential grant settings."""

    model_config = ConfigDict(extra="forbid")

    app_id: str = Field(description="Application id (supports ${ENV_VAR} substitution)")
    app_secret: str = Field(description="Application secret (supports ${ENV_VAR} substitution)")
    token_url: str = Field(
        default="https://api.weixin.qq.com/cgi-bin/token",
        description="Token endpoint",
    )
    refresh_margin_seconds: float = Field(
        default=300.0, ge=0, description="Refresh this long before the token expires"
    )


class InvokerConfig(BaseModel):
    """Top-level runtime configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(default="https://api.weixin.qq.com", description="Upstream base URL")
    timeout: float = Field(default=30.0, gt=0, description="Transport timeout in seconds")
    headers: dict[str, str] = Field(default_factory=dict, description="Default request headers")
    credential: CredentialConfig = Field(description="Credential settings")
    serialization_failure: SerializationFailurePolicy = Field(
        default=SerializationFailurePolicy.DEGRADE,
        description="JSON body serialization failure policy",
    )
    token_expired_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_TOKEN_EXPIRED_CODES),
        description="API error codes meaning the access token is no longer valid",
    )
    json_media_types: list[str] = Field(
        default_factory=lambda: ["text/plain"],
        description="Extra media types whose bodies are decoded as JSON",
    )
