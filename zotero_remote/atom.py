"""Atom/XML Query Facility - Namespace-bound XPath over parsed API documents.

Every query resolves the same three prefixes:

    atom   http://www.w3.org/2005/Atom
    zapi   http://zotero.org/ns/api
    zxfer  http://zotero.org/ns/transfer

There is deliberately no unbound query primitive. Entry metadata (key,
version, counts) sits beside a generic <content> element whose value is
either plain text or nested markup; ``inner_markup`` returns the latter.
"""

from __future__ import annotations

import json
import time
from functools import lru_cache
from typing import Any
from xml.sax.saxutils import escape

from lxml import etree

from zotero_remote.models import AtomEntry


NAMESPACES = {
    "atom": "http://www.w3.org/2005/Atom",
    "zapi": "http://zotero.org/ns/api",
    "zxfer": "http://zotero.org/ns/transfer",
}

XHTML_NAMESPACE = "http://www.w3.org/1999/xhtml"

_ENTRY_TAG = f"{{{NAMESPACES['atom']}}}entry"


class AtomError(Exception):
    """Base class for Atom document errors."""


class AtomQueryError(AtomError):
    """Raised when an XPath expression cannot be compiled or evaluated."""


class MissingContentError(AtomError):
    """Raised when an Atom entry has no <content> element."""


@lru_cache(maxsize=256)
def _compile(expression: str) -> etree.XPath:
    try:
        return etree.XPath(expression, namespaces=NAMESPACES)
    except etree.XPathError as e:
        raise AtomQueryError(f"Invalid XPath expression '{expression}': {e}") from e


def _as_element(document: Any) -> Any:
    if isinstance(document, etree._ElementTree):
        return document.getroot()
    return document


def select(document: Any, expression: str, single: bool = False) -> Any:
    """Evaluate ``expression`` against ``document``.

    Args:
        document: Parsed element or element tree.
        expression: XPath using the atom/zapi/zxfer prefixes.
        single: Return the first match, or None when nothing matches.

    Returns:
        With ``single``, the first node or None. Otherwise a list of nodes in
        document order (duplicates preserved). Expressions that evaluate to a
        number, string or boolean return that value unchanged.

    Raises:
        AtomQueryError: If the expression is invalid or uses an unknown prefix.
    """
    xpath = _compile(expression)
    try:
        result = xpath(_as_element(document))
    except etree.XPathError as e:
        raise AtomQueryError(f"Could not evaluate '{expression}': {e}") from e

    if not isinstance(result, list):
        return result
    if single:
        return result[0] if result else None
    return list(result)


def node_text(node: Any) -> str:
    """Plain string value of a node: text() results as-is, elements flattened."""
    if node is None:
        return ""
    if isinstance(node, str):
        return str(node)
    return "".join(node.itertext())


def has_element_children(element: Any) -> bool:
    return any(isinstance(child.tag, str) for child in element)


def inner_markup(element: Any) -> str:
    """Serialize everything inside ``element``: leading text and each child with its tail."""
    parts = [escape(element.text or "")]
    for child in element:
        parts.append(etree.tostring(child, encoding="unicode", with_tail=True))
    return "".join(parts)


def _optional_int(value: str) -> int | None:
    value = value.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_atom_entry(document: Any) -> AtomEntry:
    """Extract key, version and content from an entry.

    ``document`` may be an atom:entry element (queried relatively) or any
    document containing entries (the first entry is used).

    Raises:
        MissingContentError: If there is no entry or the entry has no <content>.
    """
    node = _as_element(document)
    if getattr(node, "tag", None) != _ENTRY_TAG:
        entry = select(node, "//atom:entry", single=True)
        if entry is None:
            raise MissingContentError("Atom response does not contain an entry")
        node = entry

    key = select(node, "zapi:key/text()", single=True)
    version = select(node, "zapi:version/text()", single=True)
    content = select(node, "atom:content", single=True)

    if content is None:
        raise MissingContentError("Atom response does not contain <content>")

    if has_element_children(content):
        content_value = inner_markup(content)
    else:
        content_value = node_text(content)

    return AtomEntry(
        key=node_text(key),
        version=_optional_int(node_text(version)),
        content=content_value,
    )


def atom_entries(document: Any) -> list[AtomEntry]:
    """Parse every atom:entry in a feed, in document order."""
    return [parse_atom_entry(entry) for entry in select(document, "//atom:entry")]


def total_results(document: Any) -> int | None:
    """zapi:totalResults of a feed, or None when the feed does not report it."""
    node = select(document, "//zapi:totalResults/text()", single=True)
    return _optional_int(node_text(node)) if node is not None else None


def subcontent(document: Any, content_type: str) -> Any:
    """Return one part of a multi-content entry.

    Entries requested with several content types (``content=json,html``) wrap
    each in ``zapi:subcontent[@zapi:type]``. JSON parts are decoded, HTML
    parts are returned as elements.

    Raises:
        AtomError: If the entry is not multi-content or the type is unknown.
    """
    content = select(document, "//atom:entry/atom:content", single=True)
    if content is None:
        raise MissingContentError("Atom response does not contain <content>")
    if select(content, "zapi:subcontent", single=True) is None:
        raise AtomError("Atom entry does not contain multiple content types")

    part = select(content, f'zapi:subcontent[@zapi:type="{content_type}"]', single=True)
    if content_type == "json":
        if part is None:
            raise AtomError("Atom entry has no JSON subcontent")
        try:
            return json.loads(node_text(part))
        except json.JSONDecodeError as e:
            raise AtomError(f"JSON subcontent could not be parsed: {e}") from e
    if content_type == "html":
        if part is None:
            raise AtomError("Atom entry has no HTML subcontent")
        return part
    raise AtomError(f"Unknown data type '{content_type}'")


# ---------------------------------------------------------------------------
# Request documents (groups, v2 key permissions)
# ---------------------------------------------------------------------------


def build_group_document(fields: dict[str, Any]) -> str:
    """Serialize a ``<group .../>`` creation document."""
    group = etree.Element("group")
    group.set("owner", str(fields["owner"]))
    group.set("name", str(fields.get("name") or f"Test Group {int(time.time() * 1000)}"))
    group.set("type", str(fields["type"]))
    group.set("libraryEditing", str(fields.get("libraryEditing", "members")))
    group.set("libraryReading", str(fields.get("libraryReading", "members")))
    group.set("fileEditing", str(fields.get("fileEditing", "none")))
    group.set("description", "")
    group.set("url", "")
    group.set("hasImage", "0")
    return etree.tostring(group, encoding="unicode")


def build_group_members(user_ids: list[int], role: str = "member") -> str:
    """Serialize consecutive ``<user id=... role=.../>`` elements."""
    return "".join(
        etree.tostring(etree.Element("user", id=str(user_id), role=role), encoding="unicode")
        for user_id in user_ids
    )
