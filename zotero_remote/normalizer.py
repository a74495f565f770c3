"""Response Normalizer - Parses response bodies into one tagged representation.

The representation is chosen before parsing, either from an explicit
BodyKind (usually derived from the ``format=`` the request asked for) or from
the declared Content-Type. Bodies are never sniffed.

    application/json       -> JsonBody
    application/atom+xml   -> XmlBody (also application/xml, text/xml)
    text/plain             -> KeyListBody
    format=versions (JSON) -> VersionMapBody

Also exposes the uniform version/ETag/Link/notification accessors.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from lxml import etree

from zotero_remote.models import AtomEntry, ResponseHandle


NOTIFICATION_HEADER = "Zotero-Debug-Notifications"
LAST_MODIFIED_VERSION_HEADER = "Last-Modified-Version"

_LINK_PATTERN = re.compile(r'<([^>]+)>;\s*rel="([^"]+)"')


class MalformedBodyError(Exception):
    """Raised when a body does not parse as the expected kind."""

    def __init__(self, message: str, response: ResponseHandle | None = None) -> None:
        self.response = response
        if response is not None:
            message = f"{message} ({response.describe()})"
        super().__init__(message)


class UnsupportedContentTypeError(MalformedBodyError):
    """Raised when the kind must come from a Content-Type that maps to none."""


class BodyKind(str, Enum):
    """Discriminant of the parsed-body union."""

    JSON = "json"
    XML = "xml"
    KEYS = "keys"
    VERSIONS = "versions"


@dataclass(frozen=True)
class JsonBody:
    value: Any
    kind: ClassVar[BodyKind] = BodyKind.JSON


@dataclass(frozen=True)
class XmlBody:
    document: Any  # lxml root element
    kind: ClassVar[BodyKind] = BodyKind.XML


@dataclass(frozen=True)
class KeyListBody:
    keys: list[str]
    kind: ClassVar[BodyKind] = BodyKind.KEYS


@dataclass(frozen=True)
class VersionMapBody:
    versions: dict[str, int]
    kind: ClassVar[BodyKind] = BodyKind.VERSIONS


ParsedBody = Union[JsonBody, XmlBody, KeyListBody, VersionMapBody]


_CONTENT_TYPE_KINDS = {
    "application/json": BodyKind.JSON,
    "application/atom+xml": BodyKind.XML,
    "application/xml": BodyKind.XML,
    "text/xml": BodyKind.XML,
    "text/plain": BodyKind.KEYS,
}

_FORMAT_KINDS = {
    "json": BodyKind.JSON,
    "atom": BodyKind.XML,
    "keys": BodyKind.KEYS,
    "versions": BodyKind.VERSIONS,
}


def kind_for_content_type(content_type: str | None) -> BodyKind | None:
    if not content_type:
        return None
    return _CONTENT_TYPE_KINDS.get(content_type.split(";", 1)[0].strip().lower())


def kind_for_format(format_name: str) -> BodyKind:
    """Map a ``format=`` value to the body kind it produces.

    Raises:
        ValueError: For formats with no parsed representation (e.g. bibtex).
    """
    try:
        return _FORMAT_KINDS[format_name.lower()]
    except KeyError:
        raise ValueError(f"Format '{format_name}' has no parsed representation") from None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_json_text(text: str, response: ResponseHandle | None = None) -> Any:
    """Decode JSON; a JSON ``null`` counts as a parse failure."""
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedBodyError(f"JSON response could not be parsed: {e}", response) from e
    if value is None:
        raise MalformedBodyError("JSON response could not be parsed: null body", response)
    return value


def parse_xml_text(text: str, response: ResponseHandle | None = None) -> Any:
    """Parse XML into an lxml root element."""
    if not text.strip():
        raise MalformedBodyError("XML response could not be parsed: empty body", response)
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(text.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        raise MalformedBodyError(f"XML response could not be parsed: {e}", response) from e
    if root is None:
        raise MalformedBodyError("XML response could not be parsed: no document root", response)
    return root


def parse_key_list(text: str) -> list[str]:
    """Split a newline-delimited body; trailing blank lines are dropped, '' gives []."""
    lines = text.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def parse_version_map(text: str, response: ResponseHandle | None = None) -> dict[str, int]:
    """Decode a key -> version object, keeping server order."""
    value = parse_json_text(text, response)
    if not isinstance(value, dict):
        raise MalformedBodyError(
            f"Version map must be a JSON object, got {type(value).__name__}", response
        )
    versions: dict[str, int] = {}
    for key, version in value.items():
        try:
            versions[key] = int(version)
        except (TypeError, ValueError) as e:
            raise MalformedBodyError(
                f"Version for '{key}' is not an integer: {version!r}", response
            ) from e
    return versions


def parse_body(response: ResponseHandle, expected: BodyKind | None = None) -> ParsedBody:
    """Parse a response body into exactly one representation.

    Args:
        response: The response to parse.
        expected: Kind to parse as. When None, the kind comes from the
            declared Content-Type.

    Raises:
        UnsupportedContentTypeError: If ``expected`` is None and the
            Content-Type maps to no kind.
        MalformedBodyError: If the body does not parse as the kind.
    """
    kind = expected if expected is not None else kind_for_content_type(response.content_type)
    if kind is None:
        raise UnsupportedContentTypeError(
            f"Unknown content type '{response.content_type}'", response
        )

    if kind == BodyKind.JSON:
        return JsonBody(parse_json_text(response.body, response))
    if kind == BodyKind.XML:
        return XmlBody(parse_xml_text(response.body, response))
    if kind == BodyKind.KEYS:
        return KeyListBody(parse_key_list(response.body))
    return VersionMapBody(parse_version_map(response.body, response))


def get_json(response: ResponseHandle) -> Any:
    return parse_json_text(response.body, response)


def get_xml(response: ResponseHandle) -> Any:
    return parse_xml_text(response.body, response)


def get_keys(response: ResponseHandle) -> list[str]:
    return parse_key_list(response.body)


def get_versions(response: ResponseHandle) -> dict[str, int]:
    return parse_version_map(response.body, response)


# ---------------------------------------------------------------------------
# Header accessors
# ---------------------------------------------------------------------------


def library_version(response: ResponseHandle) -> int | None:
    """Last-Modified-Version of a response, or None when absent."""
    value = response.header(LAST_MODIFIED_VERSION_HEADER)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise MalformedBodyError(
            f"Last-Modified-Version is not an integer: {value!r}", response
        ) from e


def etag(response: ResponseHandle) -> str | None:
    return response.header("ETag")


def object_version(value: Any) -> int | None:
    """Version of an object regardless of where the dialect reports it.

    Accepts a ResponseHandle (Last-Modified-Version), an AtomEntry, or a JSON
    object (top-level ``version``, falling back to ``data.version``).
    """
    if isinstance(value, ResponseHandle):
        return library_version(value)
    if isinstance(value, AtomEntry):
        return value.version
    if isinstance(value, dict):
        if "version" in value:
            return int(value["version"])
        data = value.get("data")
        if isinstance(data, dict) and "version" in data:
            return int(data["version"])
        return None
    raise TypeError(f"Cannot read a version from {type(value).__name__}")


def parse_link_header(response: ResponseHandle) -> dict[str, str]:
    """RFC 5988 Link header as rel -> URL (first, prev, next, last, alternate)."""
    links: dict[str, str] = {}
    for header in response.header_values("Link"):
        for url, rel in _LINK_PATTERN.findall(header):
            links[rel] = url
    return links


def decode_notifications(response: ResponseHandle) -> list[dict[str, Any]]:
    """Decode every notification delivered with a response.

    v3 sends one header holding a base64-encoded JSON array of JSON-encoded
    notifications. Other servers repeat the header with one raw JSON
    notification per line. Both shapes are accepted.
    """
    notifications: list[dict[str, Any]] = []
    for value in response.header_values(NOTIFICATION_HEADER):
        stripped = value.strip()
        if stripped.startswith("{"):
            notifications.append(parse_json_text(stripped, response))
            continue
        try:
            decoded = base64.b64decode(stripped, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise MalformedBodyError(
                f"Notification header is neither JSON nor base64: {stripped[:80]!r}", response
            ) from e
        entries = parse_json_text(decoded, response)
        if not isinstance(entries, list):
            entries = [entries]
        for entry in entries:
            notifications.append(parse_json_text(entry, response) if isinstance(entry, str) else entry)
    return notifications
