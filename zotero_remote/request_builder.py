"""Request Builder - Assembles one HTTP request from a path and session state.

Adds the API prefix, protocol/schema version headers and exactly one
authentication mechanism, then overlays caller-supplied ``"Name: value"``
header lines. The result is an immutable RequestDescriptor; nothing is sent
from here.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Iterable
from urllib.parse import parse_qsl

from zotero_remote.models import Auth, AuthMode, DialectProfile, RequestDescriptor


API_VERSION_HEADER = "Zotero-API-Version"
SCHEMA_VERSION_HEADER = "Zotero-Schema-Version"
API_KEY_HEADER = "Zotero-API-Key"


def parse_header_lines(lines: Iterable[str] | None) -> list[tuple[str, str]]:
    """Parse ``"Name: value"`` strings into (name, value) pairs.

    Lines without a colon after the first character are skipped, not
    rejected. Fixtures pass loosely formed header lists and rely on this.
    """
    parsed: list[tuple[str, str]] = []
    for line in lines or []:
        colon = line.find(":")
        if colon <= 0:
            continue
        parsed.append((line[:colon].strip(), line[colon + 1:].strip()))
    return parsed


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing one with the same name in any case."""
    for existing in [k for k in headers if k.lower() == name.lower()]:
        del headers[existing]
    headers[name] = value


def basic_credentials(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def if_unmodified_since(version: int | str) -> str:
    return f"If-Unmodified-Since-Version: {version}"


def if_modified_since(version: int | str) -> str:
    return f"If-Modified-Since-Version: {version}"


def if_match(etag: str) -> str:
    return f"If-Match: {etag}"


def if_none_match(etag: str) -> str:
    return f"If-None-Match: {etag}"


class RequestBuilder:
    """Builds RequestDescriptors for one API prefix and dialect.

    Session values (API key, API version, schema version) are passed per call
    so the builder itself holds no mutable state.
    """

    def __init__(self, base_url: str, dialect: DialectProfile) -> None:
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._dialect = dialect

    @property
    def base_url(self) -> str:
        return self._base_url

    def resolve_auth(self, auth: Auth | None, api_key: str | None) -> Auth:
        """Explicit auth wins; otherwise the session key in the dialect's default mode."""
        if auth is not None:
            return auth
        if api_key:
            return Auth.with_key(self._dialect.default_auth_mode, api_key)
        return Auth()

    def build(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
        api_key: str | None = None,
        api_version: int | None = None,
        schema_version: int | None = None,
    ) -> RequestDescriptor:
        """Build a request for ``path`` (relative to the prefix, may carry a query string).

        Args:
            method: HTTP method.
            path: Relative path such as ``users/1/items?format=keys``. Absolute
                http(s) URLs are used as-is.
            body: str/bytes sent verbatim; dict/list bodies are JSON-encoded.
            headers: ``"Name: value"`` lines overlaid after all built-in headers.
            auth: Explicit auth; None means the session key in the default mode.
            api_key: Session API key.
            api_version: Value for Zotero-API-Version, omitted when falsy.
            schema_version: Value for Zotero-Schema-Version, omitted when falsy.
        """
        raw_path, _, query_string = path.partition("?")
        query = parse_qsl(query_string, keep_blank_values=True)

        if raw_path.startswith(("http://", "https://")):
            url = raw_path
            relative = raw_path
        else:
            relative = raw_path.lstrip("/")
            url = self._base_url + relative

        built: dict[str, str] = {}
        if api_version:
            built[API_VERSION_HEADER] = str(api_version)
        if schema_version:
            built[SCHEMA_VERSION_HEADER] = str(schema_version)

        resolved = self.resolve_auth(auth, api_key)
        if resolved.mode == AuthMode.BASIC:
            built["Authorization"] = basic_credentials(resolved.username, resolved.password)
        elif resolved.mode == AuthMode.BEARER:
            built["Authorization"] = f"Bearer {resolved.key}"
        elif resolved.mode == AuthMode.HEADER_KEY:
            built[API_KEY_HEADER] = resolved.key
        elif resolved.mode == AuthMode.QUERY_KEY:
            # Paths built by helpers may already name the key explicitly
            if not any(name == "key" for name, _ in query):
                query.append(("key", resolved.key))

        content: str | bytes | None
        if isinstance(body, (dict, list)):
            content = json.dumps(body)
            built["Content-Type"] = "application/json"
        else:
            content = body

        for name, value in parse_header_lines(headers):
            _set_header(built, name, value)

        return RequestDescriptor(
            method=method.upper(),
            url=url,
            path=relative,
            query=tuple(query),
            headers=built,
            body=content,
            auth_mode=resolved.mode,
        )
