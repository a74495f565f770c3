"""Assertion Library - Status and response-shape assertions for test cases.

Plain ``assert`` statements so pytest rewrites them (tests/conftest.py
registers this module). Every failure message carries the response status
and body.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

from lxml import etree

from zotero_remote.atom import select, total_results
from zotero_remote.models import DialectProfile, ResponseHandle
from zotero_remote.normalizer import get_json, get_xml, parse_key_list


StatusAssertion = Callable[..., None]

_BIBTEX_ENTRY = re.compile(r"\n@")


def assert_status(response: ResponseHandle, expected: int, message: str | None = None) -> None:
    assert response.status_code == expected, message or (
        f"Expected {expected}, got {response.status_code}: {response.body}"
    )


def _status_assertion(expected: int) -> StatusAssertion:
    def check(response: ResponseHandle, message: str | None = None) -> None:
        assert_status(response, expected, message)

    check.__name__ = f"assert_{expected}"
    check.__doc__ = f"Assert that the response status is {expected}."
    return check


assert_200 = _status_assertion(200)
assert_201 = _status_assertion(201)
assert_204 = _status_assertion(204)
assert_300 = _status_assertion(300)
assert_302 = _status_assertion(302)
assert_304 = _status_assertion(304)
assert_400 = _status_assertion(400)
assert_401 = _status_assertion(401)
assert_403 = _status_assertion(403)
assert_404 = _status_assertion(404)
assert_405 = _status_assertion(405)
assert_409 = _status_assertion(409)
assert_412 = _status_assertion(412)
assert_413 = _status_assertion(413)
assert_428 = _status_assertion(428)


# =============================================================================
# Multi-object write responses
# =============================================================================


def _write_json(response: ResponseHandle) -> dict[str, Any]:
    assert_200(response)
    value = get_json(response)
    assert isinstance(value, dict), f"Write response is not a JSON object: {response.body}"
    return value


def assert_200_for_object(response: ResponseHandle, index: int = 0, message: str | None = None) -> None:
    """Object ``index`` of a batch write succeeded.

    ``successful`` is checked when present; ``success`` is sent by both
    dialects and is always checked.
    """
    value = _write_json(response)
    key = str(index)
    if "successful" in value:
        assert key in (value["successful"] or {}), message or (
            f"Object {index} not in 'successful': {response.body}"
        )
    assert "success" in value, message or f"Write response has no 'success': {response.body}"
    assert key in (value["success"] or {}), message or f"Object {index} not in 'success': {response.body}"


def assert_unchanged_for_object(response: ResponseHandle, index: int = 0) -> None:
    value = _write_json(response)
    assert "unchanged" in value, f"Write response has no 'unchanged': {response.body}"
    assert str(index) in (value["unchanged"] or {}), f"Object {index} not in 'unchanged': {response.body}"


def assert_failed_for_object(
    response: ResponseHandle,
    expected_code: int,
    message: str | None = None,
    index: int = 0,
) -> None:
    """Object ``index`` failed with ``expected_code`` (and ``message`` when given).

    Batch writes answer 200 and report per-object failures in ``failed``.
    """
    value = _write_json(response)
    key = str(index)
    assert "failed" in value, f"Write response has no 'failed': {response.body}"
    assert key in (value["failed"] or {}), f"Object {index} not in 'failed': {response.body}"
    failure = value["failed"][key]
    assert failure.get("code") == expected_code, (
        f"Expected error code {expected_code}, got {failure.get('code')}: {response.body}"
    )
    if message is not None:
        assert failure.get("message") == message, (
            f"Expected error message {message!r}, got {failure.get('message')!r}"
        )


def _failed_assertion(code: int) -> StatusAssertion:
    def check(response: ResponseHandle, message: str | None = None, index: int = 0) -> None:
        assert_failed_for_object(response, code, message, index)

    check.__name__ = f"assert_{code}_for_object"
    check.__doc__ = f"Assert that object ``index`` of a batch write failed with {code}."
    return check


assert_400_for_object = _failed_assertion(400)
assert_404_for_object = _failed_assertion(404)
assert_409_for_object = _failed_assertion(409)
assert_412_for_object = _failed_assertion(412)
assert_413_for_object = _failed_assertion(413)
assert_428_for_object = _failed_assertion(428)


# =============================================================================
# Result counts and content
# =============================================================================


def assert_total_results(
    response: ResponseHandle,
    expected: int,
    dialect: DialectProfile | None = None,
) -> None:
    """Check the total result count.

    v3 reports it in the Total-Results header; v2 in the feed's
    zapi:totalResults element.
    """
    if dialect is not None and dialect.total_results_in_feed:
        assert response.content_type == "application/atom+xml", (
            f"Total results in the feed require an Atom response, got {response.content_type}"
        )
        actual = total_results(get_xml(response))
    else:
        header = response.header("Total-Results")
        actual = int(header) if header is not None else None
    assert actual == expected, f"Expected {expected} total results, got {actual}"


def count_results(response: ResponseHandle) -> int:
    """Number of results in a response body, by Content-Type."""
    content_type = response.content_type
    body = response.body
    if content_type == "application/json":
        return len(get_json(response))
    if content_type == "text/plain":
        return len([line for line in parse_key_list(body.strip()) if line])
    # v1 responses may carry Atom under another content type
    if content_type == "application/atom+xml" or body.lstrip().startswith("<?xml"):
        return len(select(get_xml(response), "//atom:entry"))
    if content_type == "application/x-bibtex":
        return len(_BIBTEX_ENTRY.findall(body))
    raise ValueError(f"Unknown content type for result counting: {content_type}")


def assert_num_results(response: ResponseHandle, expected: int) -> None:
    actual = count_results(response)
    assert actual == expected, f"Expected {expected} results, got {actual}: {response.body_excerpt()}"


def assert_content_type(response: ResponseHandle, expected: str) -> None:
    actual = response.header("Content-Type")
    assert actual == expected, f"Expected Content-Type {expected}, got {actual}"


def _canonical_xml(text: str) -> str:
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    element = etree.fromstring(text.strip().encode("utf-8"), parser)
    return etree.tostring(element, method="c14n").decode("utf-8")


def assert_xml_strings_equal(expected: str, actual: str) -> None:
    """Compare XML ignoring whitespace between elements and attribute order."""
    assert _canonical_xml(actual) == _canonical_xml(expected), (
        f"XML strings do not match.\nExpected:\n{expected}\n\nActual:\n{actual}"
    )


def assert_json_equal(expected: Any, response: ResponseHandle) -> None:
    actual = get_json(response)
    assert actual == expected, (
        f"JSON mismatch.\nExpected:\n{json.dumps(expected, indent=2)}\n\nActual:\n{response.body}"
    )
