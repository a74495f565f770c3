"""API Client - One parameterized client for both protocol dialects.

Holds the session state a test run mutates between calls (API key, API
version, schema version) and exposes the verb families the suite uses:

    get/post/put/patch/head/delete      paths relative to the API prefix
    user_*  / group_*                   users/{id}/... and groups/{id}/...
    super_*                             root Basic credentials from config

Plus the library-level chores: user/group clear, library versions and API
key permission management.
"""

from __future__ import annotations

import random
from typing import Any, Iterable

from lxml import etree

from zotero_remote.models import (
    DIALECT_V3,
    Auth,
    DialectProfile,
    RequestDescriptor,
    ResponseHandle,
    SuiteConfig,
)
from zotero_remote.normalizer import get_json, get_xml, library_version
from zotero_remote.request_builder import RequestBuilder
from zotero_remote.transport import Transport


KEY_CHARACTERS = "23456789ABCDEFGHIJKLMNPQRSTUVWXYZ"
KEY_LENGTH = 8

# Key document permission names used by v2 (<access library="1" notes="1" write="1"/>)
_KEY_OPTION_ATTRIBUTES = {
    "libraryNotes": "notes",
    "libraryWrite": "write",
}

_USER_PERMISSIONS = ("library", "files", "notes", "write")


class ClientError(Exception):
    """Base class for helper-level failures."""


class UnexpectedStatusError(ClientError):
    """Raised when a helper's request returns a status outside its success set."""

    def __init__(
        self,
        response: ResponseHandle,
        expected: int | Iterable[int],
        action: str | None = None,
    ) -> None:
        self.response = response
        self.expected = (expected,) if isinstance(expected, int) else tuple(expected)
        self.status_code = response.status_code
        expected_text = " or ".join(str(code) for code in self.expected)
        prefix = f"{action}: " if action else ""
        super().__init__(
            f"{prefix}expected {expected_text}, got {response.status_code} "
            f"for {response.method} {response.url}: {response.body_excerpt()}"
        )


def generate_key() -> str:
    """Random object key in the server's key alphabet."""
    return "".join(random.choice(KEY_CHARACTERS) for _ in range(KEY_LENGTH))


def expect_status(
    response: ResponseHandle,
    expected: int | Iterable[int],
    action: str | None = None,
) -> ResponseHandle:
    """Return ``response`` unchanged, or raise UnexpectedStatusError."""
    allowed = (expected,) if isinstance(expected, int) else tuple(expected)
    if response.status_code not in allowed:
        raise UnexpectedStatusError(response, allowed, action)
    return response


class ApiClient:
    """Sends requests for one dialect against one API prefix.

    Usage:
        with ApiClient(config, DIALECT_V3) as client:
            client.use_api_key(state.user1_api_key)
            response = client.user_get(client.user_id, "items?format=keys")

    Session values must only change between calls. A fresh RequestDescriptor
    is built for every request, so nothing set here leaks into one already
    in flight.
    """

    def __init__(
        self,
        config: SuiteConfig,
        dialect: DialectProfile = DIALECT_V3,
        transport: Transport | None = None,
    ) -> None:
        self.config = config
        self.dialect = dialect
        self._builder = RequestBuilder(config.api_url_prefix, dialect)
        self._owns_transport = transport is None
        self._transport = transport or Transport(timeout=config.timeout, verbose=config.verbose)

        self.api_key: str | None = config.api_key
        self.api_version: int | None = dialect.api_version
        self.schema_version: int | None = config.schema_version

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_transport:
            self._transport.close()

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    def use_api_key(self, key: str | None = None) -> None:
        """Set the key sent with every request without explicit auth. None clears it."""
        self.api_key = key or None

    def use_api_version(self, version: int | None) -> None:
        """Set Zotero-API-Version. None (or 0) stops sending the header."""
        self.api_version = version or None

    def use_schema_version(self, version: int | None) -> None:
        self.schema_version = version or None

    @property
    def user_id(self) -> int:
        return self.config.user_id

    @property
    def user_id2(self) -> int:
        return self.config.user_id2

    def root_auth(self) -> Auth:
        return Auth.basic(self.config.root_username, self.config.root_password)

    # -------------------------------------------------------------------------
    # Core
    # -------------------------------------------------------------------------

    def build_request(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> RequestDescriptor:
        return self._builder.build(
            method,
            path,
            body=body,
            headers=headers,
            auth=auth,
            api_key=self.api_key,
            api_version=self.api_version,
            schema_version=self.schema_version,
        )

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        """Build and send one request. 4xx/5xx come back as ordinary responses."""
        return self._transport.send(self.build_request(method, path, body, headers, auth))

    def get(self, path: str, headers: Iterable[str] | None = None, auth: Auth | None = None) -> ResponseHandle:
        return self.request("GET", path, headers=headers, auth=auth)

    def post(
        self, path: str, data: Any = None, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.request("POST", path, data, headers, auth)

    def put(
        self, path: str, data: Any = None, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.request("PUT", path, data, headers, auth)

    def patch(
        self, path: str, data: Any = None, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.request("PATCH", path, data, headers, auth)

    def head(self, path: str, headers: Iterable[str] | None = None, auth: Auth | None = None) -> ResponseHandle:
        return self.request("HEAD", path, headers=headers, auth=auth)

    def delete(self, path: str, headers: Iterable[str] | None = None, auth: Auth | None = None) -> ResponseHandle:
        return self.request("DELETE", path, headers=headers, auth=auth)

    # -------------------------------------------------------------------------
    # Root, user and group scoped verbs
    # -------------------------------------------------------------------------

    def super_get(self, path: str, headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.get(path, headers, self.root_auth())

    def super_post(self, path: str, data: Any = None, headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.post(path, data, headers, self.root_auth())

    def super_put(self, path: str, data: Any = None, headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.put(path, data, headers, self.root_auth())

    def super_delete(self, path: str, headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.delete(path, headers, self.root_auth())

    def user_get(
        self, user_id: int, suffix: str, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.get(f"users/{user_id}/{suffix}", headers, auth)

    def user_post(
        self,
        user_id: int,
        suffix: str,
        data: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        return self.post(f"users/{user_id}/{suffix}", data, headers, auth)

    def user_put(
        self,
        user_id: int,
        suffix: str,
        data: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        return self.put(f"users/{user_id}/{suffix}", data, headers, auth)

    def user_patch(
        self,
        user_id: int,
        suffix: str,
        data: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        return self.patch(f"users/{user_id}/{suffix}", data, headers, auth)

    def user_head(
        self, user_id: int, suffix: str, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.head(f"users/{user_id}/{suffix}", headers, auth)

    def user_delete(
        self, user_id: int, suffix: str, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.delete(f"users/{user_id}/{suffix}", headers, auth)

    def group_get(
        self, group_id: int, suffix: str, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.get(f"groups/{group_id}/{suffix}", headers, auth)

    def group_post(
        self,
        group_id: int,
        suffix: str,
        data: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        return self.post(f"groups/{group_id}/{suffix}", data, headers, auth)

    def group_put(
        self,
        group_id: int,
        suffix: str,
        data: Any = None,
        headers: Iterable[str] | None = None,
        auth: Auth | None = None,
    ) -> ResponseHandle:
        return self.put(f"groups/{group_id}/{suffix}", data, headers, auth)

    def group_delete(
        self, group_id: int, suffix: str, headers: Iterable[str] | None = None, auth: Auth | None = None
    ) -> ResponseHandle:
        return self.delete(f"groups/{group_id}/{suffix}", headers, auth)

    # -------------------------------------------------------------------------
    # Library maintenance
    # -------------------------------------------------------------------------

    def user_clear(self, user_id: int | None = None) -> None:
        """Empty a user library. Requires root credentials."""
        user_id = self.user_id if user_id is None else user_id
        response = self.user_post(user_id, "clear", "", auth=self.root_auth())
        expect_status(response, 204, f"Error clearing user {user_id}")

    def group_clear(self, group_id: int) -> None:
        response = self.group_post(group_id, "clear", "", auth=self.root_auth())
        expect_status(response, 204, f"Error clearing group {group_id}")

    def get_library_version(self, user_id: int | None = None) -> int:
        """Current Last-Modified-Version of a user library."""
        user_id = self.user_id if user_id is None else user_id
        return self._library_version(self.user_get(user_id, "items?format=keys&limit=1"))

    def get_group_library_version(self, group_id: int) -> int:
        return self._library_version(self.group_get(group_id, "items?format=keys&limit=1"))

    def _library_version(self, response: ResponseHandle) -> int:
        expect_status(response, 200, "Library version request failed")
        version = library_version(response)
        if version is None:
            raise ClientError(f"Response has no Last-Modified-Version header ({response.describe()})")
        return version

    # -------------------------------------------------------------------------
    # API key permissions
    # -------------------------------------------------------------------------

    def _get_key_json(self, key: str) -> dict[str, Any]:
        response = expect_status(self.super_get(f"keys/{key}"), 200, f"GET keys/{key}")
        document = get_json(response)
        if not isinstance(document, dict):
            raise ClientError(f"Key document for {key} is not a JSON object ({response.describe()})")
        return document

    def _put_key_json(self, key: str, document: dict[str, Any]) -> None:
        expect_status(self.super_put(f"keys/{key}", document), 200, f"PUT keys/{key}")

    def reset_key(self, key: str) -> None:
        """Revoke every user and group permission from ``key``."""
        document = self._get_key_json(key)
        document["access"] = {
            "user": {name: False for name in _USER_PERMISSIONS},
            "groups": {},
        }
        self._put_key_json(key, document)

    def set_key_user_permission(self, key: str, permission: str, value: bool) -> None:
        """Set one user-library permission (library, files, notes, write)."""
        if permission not in _USER_PERMISSIONS:
            raise ValueError(f"Unknown user permission '{permission}'")
        document = self._get_key_json(key)
        access = document.setdefault("access", {})
        access.setdefault("user", {})[permission] = value
        self._put_key_json(key, document)

    def set_key_group_permission(
        self, key: str, group_id: int | str, permission: str, value: bool = True
    ) -> None:
        """Set one permission for a group (or ``"all"``) on ``key``."""
        document = self._get_key_json(key)
        groups = document.setdefault("access", {}).setdefault("groups", {})
        groups.setdefault(str(group_id), {})[permission] = value
        self._put_key_json(key, document)

    def set_key_option(self, user_id: int, key: str, option: str, value: int | bool) -> None:
        """Set a library option through the v2 XML key document.

        Only ``<access>`` elements carrying a ``library`` attribute are
        touched. The document is written back only when something changed.
        """
        attribute = _KEY_OPTION_ATTRIBUTES.get(option)
        if attribute is None:
            raise ValueError(f"Unknown key option '{option}'")

        path = f"users/{user_id}/keys/{key}"
        response = expect_status(self.super_get(path), 200, f"GET {path}")
        document = get_xml(response)

        wanted = int(value)
        changed = False
        for access in document.iter("access"):
            if access.get("library") is None:
                continue
            if int(access.get(attribute) or "0") != wanted:
                access.set(attribute, str(wanted))
                changed = True

        if changed:
            body = etree.tostring(document, encoding="unicode")
            expect_status(self.super_put(path, body), 200, f"PUT {path}")
