"""Internal data models for zotero-remote.

All models use Pydantic v2. Request and response models describe one HTTP
exchange; dialect profiles describe how the v2 and v3 protocol generations
differ; write results describe the multi-object write envelope.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Authentication
# =============================================================================


class AuthMode(str, Enum):
    """How a request is authenticated. Exactly one mode applies per request."""

    NONE = "none"
    BASIC = "basic"  # Authorization: Basic base64(username:password)
    BEARER = "bearer"  # Authorization: Bearer <key>
    HEADER_KEY = "header_key"  # Zotero-API-Key: <key>
    QUERY_KEY = "query_key"  # ?key=<key>


class Auth(BaseModel):
    """Authentication descriptor for a single request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: AuthMode = Field(default=AuthMode.NONE, description="Authentication mechanism")
    username: str | None = Field(default=None, description="Basic auth username")
    password: str | None = Field(default=None, description="Basic auth password")
    key: str | None = Field(default=None, description="API key for key-based modes")

    @model_validator(mode="after")
    def check_credentials(self) -> Self:
        if self.mode == AuthMode.BASIC:
            if self.username is None or self.password is None:
                raise ValueError("basic auth requires username and password")
        elif self.mode != AuthMode.NONE and not self.key:
            raise ValueError(f"{self.mode.value} auth requires a key")
        return self

    @classmethod
    def basic(cls, username: str, password: str) -> Auth:
        return cls(mode=AuthMode.BASIC, username=username, password=password)

    @classmethod
    def with_key(cls, mode: AuthMode, key: str) -> Auth:
        return cls(mode=mode, key=key)


# =============================================================================
# Core HTTP Models
# =============================================================================


class RequestDescriptor(BaseModel):
    """One fully built HTTP request. A new descriptor is built per call.

    Header names keep the caller's casing but are unique case-insensitively;
    the last write for a name wins.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: str = Field(description="HTTP method (GET, POST, etc.)")
    url: str = Field(description="Absolute URL without query string")
    path: str = Field(description="Path relative to the API prefix")
    query: tuple[tuple[str, str], ...] = Field(
        default=(), description="Query parameters in order (repeats allowed)"
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: str | bytes | None = Field(default=None, description="Request body")
    auth_mode: AuthMode = Field(default=AuthMode.NONE, description="Applied auth mechanism")

    def header(self, name: str) -> str | None:
        lower = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lower:
                return value
        return None

    def query_values(self, name: str) -> list[str]:
        return [value for key, value in self.query if key == name]


class ResponseHandle(BaseModel):
    """One HTTP response as seen by the caller.

    Header keys are lowercase. Header values are arrays for repeated headers.
    4xx/5xx responses are ordinary handles; only transport failures raise.
    """

    model_config = ConfigDict(extra="forbid")

    method: str = Field(description="Method of the request that produced this response")
    url: str = Field(description="URL of the request that produced this response")
    status_code: int = Field(description="HTTP status code")
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="Response headers (lowercase keys, array values)"
    )
    body: str = Field(default="", description="Raw response body")
    elapsed_ms: float = Field(default=0.0, description="Response time in milliseconds")

    def header(self, name: str) -> str | None:
        """First value of a header, or None when absent."""
        values = self.headers.get(name.lower())
        return values[0] if values else None

    def header_values(self, name: str) -> list[str]:
        """All values of a (possibly repeated) header, in received order."""
        return list(self.headers.get(name.lower(), []))

    @property
    def content_type(self) -> str | None:
        """Media type of the body, lowercased, without parameters."""
        value = self.header("content-type")
        if value is None:
            return None
        return value.split(";", 1)[0].strip().lower()

    def body_excerpt(self, limit: int = 500) -> str:
        if len(self.body) <= limit:
            return self.body
        return self.body[:limit] + f"... ({len(self.body) - limit} more characters)"

    def describe(self, limit: int = 500) -> str:
        """One-line summary used in error messages."""
        return f"{self.method} {self.url} -> {self.status_code}: {self.body_excerpt(limit)}"


# =============================================================================
# Protocol Dialects
# =============================================================================


class EnvelopeStyle(str, Enum):
    """Shape of multi-object create payloads."""

    WRAPPED = "wrapped"  # {"items": [...]}
    BARE = "bare"  # [...]


class DialectProfile(BaseModel):
    """Everything that differs between protocol generations.

    The v2 and v3 APIs differ only in envelope shape, default authentication,
    default response format and where a few counters are reported. One client
    parameterized by a profile covers both.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Dialect name for messages")
    api_version: int = Field(description="Value sent in Zotero-API-Version")
    default_format: str = Field(description="Format returned when none is requested")
    default_return_format: str = Field(description="Default create-helper return format")
    envelope_style: EnvelopeStyle = Field(description="Multi-object create envelope")
    default_auth_mode: AuthMode = Field(description="How the session API key is sent")
    reports_successful: bool = Field(
        description="Whether write responses carry the 'successful' map"
    )
    total_results_in_feed: bool = Field(
        description="Whether result totals come from zapi:totalResults instead of a header"
    )


DIALECT_V2 = DialectProfile(
    name="v2",
    api_version=2,
    default_format="atom",
    default_return_format="atom",
    envelope_style=EnvelopeStyle.WRAPPED,
    default_auth_mode=AuthMode.QUERY_KEY,
    reports_successful=False,
    total_results_in_feed=True,
)

DIALECT_V3 = DialectProfile(
    name="v3",
    api_version=3,
    default_format="json",
    default_return_format="responsejson",
    envelope_style=EnvelopeStyle.BARE,
    default_auth_mode=AuthMode.BEARER,
    reports_successful=True,
    total_results_in_feed=False,
)


def dialect_for_version(api_version: int) -> DialectProfile:
    """Return the dialect profile for a protocol version number.

    Version 1 shares the v2 dialect and only differs in the version header.
    """
    if api_version >= 3:
        return DIALECT_V3.model_copy(update={"api_version": api_version})
    if api_version == 2:
        return DIALECT_V2
    if api_version == 1:
        return DIALECT_V2.model_copy(update={"name": "v1", "api_version": 1})
    raise ValueError(f"Unsupported API version: {api_version}")


# =============================================================================
# Multi-Object Write Results
# =============================================================================


class SuccessfulWrite(BaseModel):
    """One successfully written object in a batch write."""

    model_config = ConfigDict(extra="allow")

    key: str
    version: int
    data: dict[str, Any] = Field(default_factory=dict)


class FailedWrite(BaseModel):
    """One rejected object in a batch write."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str = ""
    key: str | None = None
    data: Any = None


def _index_map(value: Any) -> Any:
    # Older servers emit JSON arrays instead of index-keyed objects
    if value is None:
        return {}
    if isinstance(value, list):
        return {str(i): v for i, v in enumerate(value)}
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    return value


class WriteResult(BaseModel):
    """Multi-object write response: index -> outcome.

    ``success`` is the deprecated index -> key mirror of ``successful``; the
    v2 dialect sends only ``success``.
    """

    model_config = ConfigDict(extra="ignore")

    successful: dict[str, SuccessfulWrite] = Field(default_factory=dict)
    success: dict[str, str] = Field(default_factory=dict)
    unchanged: dict[str, Any] = Field(default_factory=dict)
    failed: dict[str, FailedWrite] = Field(default_factory=dict)

    @field_validator("successful", "success", "unchanged", "failed", mode="before")
    @classmethod
    def normalize_index_map(cls, v: Any) -> Any:
        return _index_map(v)

    def _successful_indices(self) -> set[str]:
        return set(self.successful) | set(self.success)

    def created_keys(self) -> list[str]:
        """Keys of successful writes in index order."""
        if self.successful:
            items = {index: entry.key for index, entry in self.successful.items()}
        else:
            items = dict(self.success)
        return [items[index] for index in sorted(items, key=int)]

    def overlapping_indices(self) -> set[str]:
        """Indices reported in more than one outcome map."""
        successful = self._successful_indices()
        unchanged = set(self.unchanged)
        failed = set(self.failed)
        return (successful & unchanged) | (successful & failed) | (unchanged & failed)

    def covers(self, count: int) -> bool:
        """True if indices 0..count-1 each appear in exactly one outcome map."""
        reported = self._successful_indices() | set(self.unchanged) | set(self.failed)
        expected = {str(i) for i in range(count)}
        return reported == expected and not self.overlapping_indices()

    def all_succeeded(self) -> bool:
        return not self.failed and not self.unchanged and bool(self._successful_indices())


# =============================================================================
# Atom
# =============================================================================


class AtomEntry(BaseModel):
    """Metadata and content extracted from one Atom entry. Derived, never cached."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(default="", description="zapi:key, empty when absent")
    version: int | None = Field(default=None, description="zapi:version")
    content: str = Field(default="", description="Text or serialized child markup of <content>")


# =============================================================================
# Suite Configuration Models
# =============================================================================


class SuiteConfig(BaseModel):
    """Top-level suite configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    api_url_prefix: str = Field(description="Base URL every API path is appended to")
    user_id: int = Field(description="Primary test user")
    user_id2: int = Field(description="Secondary test user")
    root_username: str = Field(description="Root (super user) username")
    root_password: str = Field(description="Root (super user) password")
    api_key: str | None = Field(default=None, description="API key; set by suite setup if absent")
    schema_version: int | None = Field(default=None, description="Zotero-Schema-Version to send")
    verbose: int = Field(default=0, ge=0, le=2, description="0 silent, 1 echo requests, 2 echo bodies")
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")

    @field_validator("api_url_prefix")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        return v if v.endswith("/") else v + "/"


class SuiteState(BaseModel):
    """Runtime values produced by suite setup."""

    model_config = ConfigDict(extra="forbid")

    user1_api_key: str
    user2_api_key: str
    owned_public_group_id: int | None = None
    owned_public_no_anonymous_group_id: int | None = None
    owned_private_group_id: int | None = None
    owned_private_group_id2: int | None = None
    owned_private_group_name: str = "Private Test Group"
    num_owned_groups: int = 3
    num_public_groups: int = 2
