"""Object-Model Helpers - Items, collections, searches, groups and tags.

Built only on ApiClient and the normalizer. Everything dialect-specific comes
from the client's DialectProfile: the create envelope (``{"items": [...]}``
versus a bare array), the default return format, and whether write responses
must carry ``successful``.

Create helpers take a return format and decode progressively deeper layers of
the created object:

    response      raw ResponseHandle of the write
    responsejson  WriteResult (partial failure is a normal return value)
    key           the single created key
    atomresponse  ResponseHandle of the Atom fetch
    atom          parsed Atom document      (fetch)
    data          AtomEntry                 (fetch -> atom)
    content       AtomEntry.content         (fetch -> atom -> data)
    json          decoded JSON content      (fetch -> atom -> data -> content)
    jsonresponse  ResponseHandle of a format=json fetch
    jsondata      ``data`` member of a format=json fetch

A failure in the chain raises CreateDecodeError naming the layer.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Iterable
from urllib.parse import urlencode

from pydantic import ValidationError

from zotero_remote.atom import (
    AtomError,
    build_group_document,
    build_group_members,
    parse_atom_entry,
    subcontent,
)
from zotero_remote.client import ApiClient, ClientError, expect_status
from zotero_remote.models import AtomEntry, DialectProfile, EnvelopeStyle, ResponseHandle, WriteResult
from zotero_remote.normalizer import (
    JsonBody,
    KeyListBody,
    MalformedBodyError,
    UnsupportedContentTypeError,
    XmlBody,
    get_json,
    get_xml,
    kind_for_format,
    library_version,
    parse_body,
)
from zotero_remote.request_builder import if_unmodified_since
from zotero_remote.transport import TransportError


OBJECT_TYPES = ("item", "collection", "search")

HIGHLIGHT_TEXT = "This is highlighted text."
ANNOTATION_COLOR = "#ff8c19"
ANNOTATION_SORT_INDEX = "00015|002431|00000"
ANNOTATION_POSITION = {"pageIndex": 123, "rects": [[314.4, 412.8, 556.2, 609.6]]}

DEFAULT_SEARCH_CONDITIONS = [{"condition": "title", "operator": "contains", "value": "test"}]

_GROUP_ID_PATTERN = re.compile(r"[0-9]+$")


class ProtocolDialectMismatchError(ClientError):
    """Raised when a response does not have the shape the active dialect promises."""


class WriteFailedError(ClientError):
    """Raised when a single-object create did not produce exactly one created key."""

    def __init__(self, object_type: str, result: WriteResult, response: ResponseHandle) -> None:
        self.object_type = object_type
        self.result = result
        self.response = response
        super().__init__(
            f"{object_type.capitalize()} creation failed: "
            f"{len(result.created_keys())} created, {len(result.unchanged)} unchanged, "
            f"{len(result.failed)} failed ({response.describe()})"
        )


class CreateDecodeError(ClientError):
    """Raised when decoding a created object fails at one layer of the chain."""

    LAYERS = ("fetch", "atom", "data", "content", "json")

    def __init__(self, layer: str, object_type: str, key: str, cause: Exception | str) -> None:
        self.layer = layer
        self.object_type = object_type
        self.key = key
        super().__init__(f"Decoding {object_type} {key} failed at '{layer}': {cause}")


class ReturnFormat(str, Enum):
    """What a create helper returns."""

    RESPONSE = "response"
    RESPONSE_JSON = "responsejson"
    KEY = "key"
    ATOM_RESPONSE = "atomresponse"
    ATOM = "atom"
    DATA = "data"
    CONTENT = "content"
    JSON = "json"
    JSON_RESPONSE = "jsonresponse"
    JSON_DATA = "jsondata"

    @classmethod
    def parse(cls, value: str | ReturnFormat) -> ReturnFormat:
        """Case-insensitive lookup (``responseJSON`` and ``responsejson`` are the same)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid result format '{value}'") from None


def plural_object_type(object_type: str) -> str:
    """URL segment for an object type. The only irregular plural is search -> searches."""
    if object_type == "search":
        return "searches"
    return object_type + "s"


def _with_query(path: str, params: list[tuple[str, str]]) -> str:
    if not params:
        return path
    return f"{path}?{urlencode(params, safe=',|')}"


class ObjectHelpers:
    """Domain operations over one ApiClient.

    Usage:
        helpers = ObjectHelpers(client)
        key = helpers.create_item("book", {"title": "Title"}, "key")
        item = helpers.get_item(key, "json")
    """

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    @property
    def dialect(self) -> DialectProfile:
        return self.client.dialect

    def _library_path(self, group_id: int | None = None) -> str:
        if group_id:
            return f"groups/{group_id}"
        return f"users/{self.client.user_id}"

    # =========================================================================
    # Payloads
    # =========================================================================

    def wrap_objects(self, object_type: str, objects: list[dict[str, Any]]) -> Any:
        """Envelope for a multi-object write in the active dialect."""
        if self.dialect.envelope_style == EnvelopeStyle.WRAPPED:
            return {plural_object_type(object_type): objects}
        return objects

    def get_item_template(
        self,
        item_type: str,
        link_mode: str | None = None,
        annotation_type: str | None = None,
    ) -> dict[str, Any]:
        """Fetch the blank JSON template for an item type."""
        params = [("itemType", item_type)]
        if link_mode:
            params.append(("linkMode", link_mode))
        if annotation_type:
            params.append(("annotationType", annotation_type))
        response = self.client.get(_with_query("items/new", params))
        expect_status(response, 200, "Invalid response from template request")
        template = get_json(response)
        if not isinstance(template, dict):
            raise MalformedBodyError("Item template is not a JSON object", response)
        return template

    def create_unsaved_data_object(self, object_type: str) -> dict[str, Any]:
        """A valid payload for ``object_type`` that has not been posted."""
        if object_type == "item":
            return self.get_item_template("book")
        if object_type == "collection":
            return {"name": "Test"}
        if object_type == "search":
            return {"name": "Test", "conditions": [dict(c) for c in DEFAULT_SEARCH_CONDITIONS]}
        raise ValueError(f"Unknown object type '{object_type}'")

    # =========================================================================
    # Writes
    # =========================================================================

    def post_objects(
        self,
        object_type: str,
        objects: list[dict[str, Any]],
        group_id: int | None = None,
        headers: Iterable[str] | None = None,
    ) -> ResponseHandle:
        """POST a batch of objects, wrapped for the active dialect."""
        path = f"{self._library_path(group_id)}/{plural_object_type(object_type)}"
        return self.client.post(path, self.wrap_objects(object_type, objects), headers)

    def post_item(self, item: dict[str, Any], headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.post_objects("item", [item], headers=headers)

    def post_items(self, items: list[dict[str, Any]], headers: Iterable[str] | None = None) -> ResponseHandle:
        return self.post_objects("item", items, headers=headers)

    def create_object(
        self,
        object_type: str,
        payload: dict[str, Any],
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        response = self.post_objects(object_type, [payload], group_id)
        return self.handle_create_response(object_type, response, return_format, group_id)

    def create_item(
        self,
        item_type: str,
        data: dict[str, Any] | None = None,
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        """Create one item from its template with ``data`` merged over it."""
        item = self.get_item_template(item_type)
        item.update(data or {})
        return self.create_object("item", item, return_format, group_id)

    def group_create_item(
        self,
        group_id: int,
        item_type: str,
        data: dict[str, Any] | None = None,
        return_format: str | ReturnFormat | None = None,
    ) -> Any:
        return self.create_item(item_type, data, return_format, group_id)

    def create_note_item(
        self,
        text: str = "",
        parent_key: str | None = None,
        return_format: str | ReturnFormat | None = None,
    ) -> Any:
        note = self.get_item_template("note")
        note["note"] = text
        if parent_key:
            note["parentItem"] = parent_key
        return self.create_object("item", note, return_format)

    def create_attachment_item(
        self,
        link_mode: str,
        data: dict[str, Any] | None = None,
        parent_key: str | None = None,
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        attachment = self.get_item_template("attachment", link_mode=link_mode)
        attachment.update(data or {})
        if parent_key:
            attachment["parentItem"] = parent_key
        return self.create_object("item", attachment, return_format, group_id)

    def group_create_attachment_item(
        self,
        group_id: int,
        link_mode: str,
        data: dict[str, Any] | None = None,
        parent_key: str | None = None,
        return_format: str | ReturnFormat | None = None,
    ) -> Any:
        return self.create_attachment_item(link_mode, data, parent_key, return_format, group_id)

    def create_annotation_item(
        self,
        annotation_type: str,
        data: dict[str, Any] | None,
        parent_key: str,
        return_format: str | ReturnFormat | None = None,
    ) -> Any:
        """Create an annotation on attachment ``parent_key`` with fixed position data.

        Only ``annotationComment`` is taken from ``data``; highlights always
        get the same highlighted text.
        """
        annotation = self.get_item_template("annotation", annotation_type=annotation_type)
        annotation["parentItem"] = parent_key
        if annotation_type == "highlight":
            annotation["annotationText"] = HIGHLIGHT_TEXT
        if data and "annotationComment" in data:
            annotation["annotationComment"] = data["annotationComment"]
        annotation["annotationColor"] = ANNOTATION_COLOR
        annotation["annotationSortIndex"] = ANNOTATION_SORT_INDEX
        annotation["annotationPosition"] = json.dumps(ANNOTATION_POSITION)
        return self.create_object("item", annotation, return_format)

    def create_collection(
        self,
        name: str,
        data: dict[str, Any] | str | None = None,
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        """Create a collection. ``data`` is a parent key or a dict of extra fields."""
        parent: str | bool = False
        relations: dict[str, Any] = {}
        if isinstance(data, dict):
            parent = data.get("parentCollection") or False
            relations = data.get("relations") or {}
        elif data:
            parent = data

        collection: dict[str, Any] = {
            "name": name,
            "parentCollection": parent,
            "relations": relations,
        }
        if isinstance(data, dict) and "deleted" in data:
            collection["deleted"] = data["deleted"]
        return self.create_object("collection", collection, return_format, group_id)

    def create_search(
        self,
        name: str,
        conditions: list[dict[str, Any]] | str | None = None,
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        """Create a saved search; no conditions (or ``"default"``) means title contains 'test'."""
        if not conditions or conditions == "default":
            conditions = [dict(c) for c in DEFAULT_SEARCH_CONDITIONS]
        search = {"name": name, "conditions": conditions}
        return self.create_object("search", search, return_format, group_id)

    def create_data_object(
        self,
        object_type: str,
        data: dict[str, Any] | None = None,
        return_format: str | ReturnFormat | None = "json",
    ) -> Any:
        """Create a minimal object of any data type with optional extra fields."""
        data = dict(data or {})
        if object_type == "item":
            return self.create_item("book", data, return_format)
        if object_type == "collection":
            return self.create_collection("Test", data, return_format)
        if object_type == "search":
            search = {
                "name": data.pop("name", "Test"),
                "conditions": data.pop("conditions", [dict(c) for c in DEFAULT_SEARCH_CONDITIONS]),
            }
            search.update(data)
            return self.create_object("search", search, return_format)
        raise ValueError(f"Unknown object type '{object_type}'")

    # =========================================================================
    # Write responses
    # =========================================================================

    def parse_write_result(self, response: ResponseHandle) -> WriteResult:
        """Decode a multi-object write response.

        Raises:
            ProtocolDialectMismatchError: If the body is not a write envelope,
                or the active dialect promises ``successful`` and it is missing.
        """
        value = get_json(response)
        if not isinstance(value, dict):
            raise ProtocolDialectMismatchError(
                f"Write response is not a JSON object ({response.describe()})"
            )
        if self.dialect.reports_successful and "successful" not in value:
            raise ProtocolDialectMismatchError(
                f"{self.dialect.name} write response lacks 'successful' ({response.describe()})"
            )
        if "successful" not in value and "success" not in value:
            raise ProtocolDialectMismatchError(
                f"Write response has neither 'successful' nor 'success' ({response.describe()})"
            )
        try:
            return WriteResult.model_validate(value)
        except ValidationError as e:
            raise ProtocolDialectMismatchError(
                f"Write response has an unexpected shape: {e} ({response.describe()})"
            ) from e

    def handle_create_response(
        self,
        object_type: str,
        response: ResponseHandle,
        return_format: str | ReturnFormat | None = None,
        group_id: int | None = None,
    ) -> Any:
        """Interpret a create response per ``return_format`` (dialect default when None).

        Raises:
            UnexpectedStatusError: If the write did not return 200. Nothing is
                decoded in that case.
            WriteFailedError: If a format past ``responsejson`` is requested
                and the batch did not create exactly one object.
            CreateDecodeError: If fetching or decoding the created object fails.
        """
        fmt = ReturnFormat.parse(return_format or self.dialect.default_return_format)

        expect_status(response, 200, f"{object_type.capitalize()} creation failed")
        if fmt == ReturnFormat.RESPONSE:
            return response

        result = self.parse_write_result(response)
        if fmt == ReturnFormat.RESPONSE_JSON:
            return result

        keys = result.created_keys()
        if len(keys) != 1 or result.failed or result.unchanged:
            raise WriteFailedError(object_type, result, response)
        key = keys[0]
        if fmt == ReturnFormat.KEY:
            return key

        if fmt in (ReturnFormat.JSON_RESPONSE, ReturnFormat.JSON_DATA):
            return self._decode_json_fetch(object_type, key, fmt, group_id)
        return self._decode_atom_fetch(object_type, key, fmt, group_id)

    def _decode_json_fetch(
        self, object_type: str, key: str, fmt: ReturnFormat, group_id: int | None
    ) -> Any:
        try:
            fetched = self.get_object_response(object_type, key, "json", group_id)
        except (ClientError, TransportError) as e:
            raise CreateDecodeError("fetch", object_type, key, e) from e
        if fmt == ReturnFormat.JSON_RESPONSE:
            return fetched

        try:
            value = get_json(fetched)
        except MalformedBodyError as e:
            raise CreateDecodeError("json", object_type, key, e) from e
        if not isinstance(value, dict) or "data" not in value:
            raise CreateDecodeError("data", object_type, key, "JSON object has no 'data' member")
        return value["data"]

    def _decode_atom_fetch(
        self, object_type: str, key: str, fmt: ReturnFormat, group_id: int | None
    ) -> Any:
        try:
            fetched = self.get_objects_xml_response(object_type, [key], group_id)
        except (ClientError, TransportError) as e:
            raise CreateDecodeError("fetch", object_type, key, e) from e
        if fmt == ReturnFormat.ATOM_RESPONSE:
            return fetched

        try:
            document = get_xml(fetched)
        except MalformedBodyError as e:
            raise CreateDecodeError("atom", object_type, key, e) from e
        if fmt == ReturnFormat.ATOM:
            return document

        try:
            entry = parse_atom_entry(document)
        except AtomError as e:
            raise CreateDecodeError("data", object_type, key, e) from e
        if fmt == ReturnFormat.DATA:
            return entry

        if not entry.content.strip():
            raise CreateDecodeError("content", object_type, key, "Atom <content> is empty")
        if fmt == ReturnFormat.CONTENT:
            return entry.content

        try:
            return json.loads(entry.content)
        except json.JSONDecodeError as e:
            raise CreateDecodeError("json", object_type, key, e) from e

    def get_first_success_key(self, response: ResponseHandle) -> str:
        keys = self.parse_write_result(response).created_keys()
        if not keys:
            raise ClientError(f"No success keys found in response ({response.describe()})")
        return keys[0]

    def get_successful_keys(self, response: ResponseHandle) -> list[str]:
        """Created keys in submission order."""
        return self.parse_write_result(response).created_keys()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_object_response(
        self,
        object_type: str,
        keys: str | list[str],
        format: str | None = None,
        group_id: int | None = None,
    ) -> ResponseHandle:
        """Fetch one object (``keys`` is a str) or several in the given key order.

        ``format="atom"`` also requests ``content=json``.

        Raises:
            UnexpectedStatusError: If the server does not answer 200.
        """
        plural = plural_object_type(object_type)
        params: list[tuple[str, str]] = []
        if isinstance(keys, str):
            path = f"{plural}/{keys}"
        else:
            path = plural
            params.append((f"{object_type}Key", ",".join(keys)))
            params.append(("order", f"{object_type}KeyList"))
        if format:
            params.append(("format", format))
            if format == "atom":
                params.append(("content", "json"))

        response = self.client.get(f"{self._library_path(group_id)}/{_with_query(path, params)}")
        return expect_status(response, 200, f"GET {object_type} {keys}")

    def get_object(
        self,
        object_type: str,
        keys: str | list[str],
        format: str | None = None,
        group_id: int | None = None,
    ) -> Any:
        """Fetch and decode one object or several.

        The requested ``format`` decides the body kind: ``keys`` gives a key
        list, ``versions`` a key -> version map, ``json`` a JSON value and
        ``atom`` an lxml document. Without a format the Content-Type decides.

        Raises:
            UnsupportedContentTypeError: If the format (or, without one, the
                Content-Type) has no parsed representation.
        """
        response = self.get_object_response(object_type, keys, format, group_id)
        expected = None
        if format:
            try:
                expected = kind_for_format(format)
            except ValueError as e:
                raise UnsupportedContentTypeError(str(e), response) from e
        body = parse_body(response, expected)
        if isinstance(body, JsonBody):
            return body.value
        if isinstance(body, XmlBody):
            return body.document
        if isinstance(body, KeyListBody):
            return body.keys
        return body.versions

    def get_item(self, keys: str | list[str], format: str | None = None, group_id: int | None = None) -> Any:
        return self.get_object("item", keys, format, group_id)

    def get_item_response(
        self, keys: str | list[str], format: str | None = None, group_id: int | None = None
    ) -> ResponseHandle:
        return self.get_object_response("item", keys, format, group_id)

    def get_collection(self, keys: str | list[str], format: str | None = None, group_id: int | None = None) -> Any:
        return self.get_object("collection", keys, format, group_id)

    def get_collection_response(
        self, keys: str | list[str], format: str | None = None, group_id: int | None = None
    ) -> ResponseHandle:
        return self.get_object_response("collection", keys, format, group_id)

    def get_search(self, keys: str | list[str], format: str | None = None, group_id: int | None = None) -> Any:
        return self.get_object("search", keys, format, group_id)

    def get_search_response(
        self, keys: str | list[str], format: str | None = None, group_id: int | None = None
    ) -> ResponseHandle:
        return self.get_object_response("search", keys, format, group_id)

    def get_objects_xml_response(
        self, object_type: str, keys: str | list[str], group_id: int | None = None
    ) -> ResponseHandle:
        """Atom feed (with JSON content) for the given keys, in key order."""
        if isinstance(keys, str):
            keys = [keys]
        params = [
            (f"{object_type}Key", ",".join(keys)),
            ("order", f"{object_type}KeyList"),
            ("format", "atom"),
            ("content", "json"),
        ]
        path = _with_query(plural_object_type(object_type), params)
        response = self.client.get(f"{self._library_path(group_id)}/{path}")
        return expect_status(response, 200, f"GET {object_type} Atom {keys}")

    def get_objects_xml(self, object_type: str, keys: str | list[str], group_id: int | None = None) -> Any:
        return get_xml(self.get_objects_xml_response(object_type, keys, group_id))

    def get_item_xml(self, keys: str | list[str]) -> Any:
        return self.get_objects_xml("item", keys)

    def get_collection_xml(self, keys: str | list[str]) -> Any:
        return self.get_objects_xml("collection", keys)

    def get_search_xml(self, keys: str | list[str]) -> Any:
        return self.get_objects_xml("search", keys)

    def group_get_item_xml(self, group_id: int, keys: str | list[str]) -> Any:
        return self.get_objects_xml("item", keys, group_id)

    def get_object_version(self, object_type: str, key: str, group_id: int | None = None) -> int:
        """Current version of one object, from its Last-Modified-Version."""
        response = self.get_object_response(object_type, key, "json", group_id)
        version = library_version(response)
        if version is None:
            raise ClientError(f"Response has no Last-Modified-Version header ({response.describe()})")
        return version

    def get_content_from_response(self, response: ResponseHandle) -> str:
        """Content of the first entry of an Atom response."""
        return parse_atom_entry(get_xml(response)).content

    def get_data_from_response(self, response: ResponseHandle) -> AtomEntry:
        return parse_atom_entry(get_xml(response))

    def get_content_from_atom_response(self, response: ResponseHandle, content_type: str) -> Any:
        """One part (``json`` or ``html``) of a multi-content Atom entry."""
        return subcontent(get_xml(response), content_type)

    # =========================================================================
    # Updates and deletes
    # =========================================================================

    def update_object(
        self,
        object_type: str,
        key: str,
        data: dict[str, Any],
        version: int | None = None,
        patch: bool = False,
        group_id: int | None = None,
        headers: Iterable[str] | None = None,
    ) -> ResponseHandle:
        """PUT (or PATCH) one object. ``version`` becomes If-Unmodified-Since-Version.

        The response is returned as-is; 412 and 428 are for the caller to assert.
        """
        lines = list(headers or [])
        if version is not None:
            lines.insert(0, if_unmodified_since(version))
        path = f"{self._library_path(group_id)}/{plural_object_type(object_type)}/{key}"
        if patch:
            return self.client.patch(path, data, lines)
        return self.client.put(path, data, lines)

    def delete_object(
        self,
        object_type: str,
        key: str,
        version: int | None = None,
        group_id: int | None = None,
    ) -> ResponseHandle:
        headers = [if_unmodified_since(version)] if version is not None else []
        path = f"{self._library_path(group_id)}/{plural_object_type(object_type)}/{key}"
        return self.client.delete(path, headers)

    def delete_objects(
        self,
        object_type: str,
        keys: list[str],
        version: int | None = None,
        group_id: int | None = None,
    ) -> ResponseHandle:
        headers = [if_unmodified_since(version)] if version is not None else []
        path = _with_query(plural_object_type(object_type), [(f"{object_type}Key", ",".join(keys))])
        return self.client.delete(f"{self._library_path(group_id)}/{path}", headers)

    # =========================================================================
    # Tags
    # =========================================================================

    def get_tags(self, group_id: int | None = None, params: dict[str, str] | None = None) -> ResponseHandle:
        path = _with_query("tags", list((params or {}).items()))
        return self.client.get(f"{self._library_path(group_id)}/{path}")

    def delete_tags(self, tags: list[str], version: int, group_id: int | None = None) -> ResponseHandle:
        """Delete several tags in one request (``tag=a || b``)."""
        path = _with_query("tags", [("tag", " || ".join(tags))])
        return self.client.delete(f"{self._library_path(group_id)}/{path}", [if_unmodified_since(version)])

    # =========================================================================
    # Groups
    # =========================================================================

    def create_group(self, fields: dict[str, Any], return_format: str = "id") -> Any:
        """Create a group as root and optionally add members.

        Args:
            fields: owner, type, and optionally name, libraryEditing,
                libraryReading, fileEditing and members (user ids).
            return_format: ``"id"`` for the new group id, ``"response"`` for
                the creation response.
        """
        if return_format not in ("id", "response"):
            raise ValueError(f"Unknown response format '{return_format}'")

        response = self.client.super_post(
            "groups", build_group_document(fields), ["Content-Type: text/xml"]
        )
        expect_status(response, 201, "Group creation failed")

        location = response.header("Location") or ""
        match = _GROUP_ID_PATTERN.search(location)
        if match is None:
            raise ClientError(f"Group creation returned no group id in Location: {location!r}")
        group_id = int(match.group(0))

        members = fields.get("members") or []
        if members:
            members_response = self.client.super_post(
                f"groups/{group_id}/users", build_group_members(members), ["Content-Type: text/xml"]
            )
            expect_status(members_response, 200, f"Adding members to group {group_id} failed")

        if return_format == "response":
            return response
        return group_id

    def delete_group(self, group_id: int) -> None:
        expect_status(self.client.super_delete(f"groups/{group_id}"), 204, f"Deleting group {group_id} failed")


