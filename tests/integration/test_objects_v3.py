"""Integration tests: v3 dialect against the mock Zotero server.

Every test starts from an empty user library (see the v3_helpers fixture).
"""

import pytest

from zotero_remote.assertions import (
    assert_200,
    assert_200_for_object,
    assert_204,
    assert_302,
    assert_304,
    assert_400_for_object,
    assert_403,
    assert_404,
    assert_409_for_object,
    assert_412,
    assert_412_for_object,
    assert_413,
    assert_413_for_object,
    assert_428,
    assert_num_results,
    assert_total_results,
    assert_unchanged_for_object,
    count_results,
)
from zotero_remote.atom import node_text, select
from zotero_remote.client import generate_key
from zotero_remote.models import DIALECT_V3, Auth, AuthMode, WriteResult
from zotero_remote.normalizer import (
    decode_notifications,
    get_json,
    get_keys,
    get_versions,
    library_version,
    parse_link_header,
)
from zotero_remote.objects import HIGHLIGHT_TEXT, ObjectHelpers
from zotero_remote.request_builder import if_modified_since, if_unmodified_since


def _uid(helpers: ObjectHelpers) -> int:
    return helpers.client.user_id


# =============================================================================
# Create and read back
# =============================================================================


class TestCreate:
    def test_default_format_is_write_result(self, v3_helpers: ObjectHelpers):
        result = v3_helpers.create_item("book", {"title": "Default"})
        assert isinstance(result, WriteResult)
        assert result.successful["0"].data["title"] == "Default"

    def test_successful_version_matches_library_version(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.create_item("book", {"title": "Title"}, "response")
        assert_200(response)
        result = v3_helpers.parse_write_result(response)
        assert result.successful["0"].data["title"] == "Title"
        assert result.successful["0"].version == library_version(response)

    @pytest.mark.parametrize(
        "object_type, payload",
        [
            ("item", {"itemType": "book", "title": "Round Trip"}),
            ("collection", {"name": "Round Trip"}),
            ("search", {"name": "Round Trip", "conditions": [{"condition": "title", "operator": "is", "value": "x"}]}),
        ],
        ids=["item", "collection", "search"],
    )
    def test_supplied_fields_round_trip(self, v3_helpers: ObjectHelpers, object_type, payload):
        key = v3_helpers.create_object(object_type, dict(payload), "key")
        data = v3_helpers.get_object(object_type, key, "json")["data"]
        assert {field: data[field] for field in payload} == payload

    def test_key_round_trip(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Round Trip"}, "key")
        item = v3_helpers.get_item(key, "json")
        assert item["key"] == key
        assert item["data"]["title"] == "Round Trip"
        assert item["library"] == {"type": "user", "id": _uid(v3_helpers)}

    def test_json_through_atom(self, v3_helpers: ObjectHelpers):
        data = v3_helpers.create_item("journalArticle", {"title": "Atom"}, "json")
        assert data["itemType"] == "journalArticle"
        assert data["title"] == "Atom"

    def test_data_and_jsondata_agree(self, v3_helpers: ObjectHelpers):
        entry = v3_helpers.create_item("book", {"title": "One"}, "data")
        jsondata = v3_helpers.get_item(entry.key, "json")["data"]
        assert entry.version == jsondata["version"]

        data = v3_helpers.create_collection("Coll", None, "jsondata")
        assert data["name"] == "Coll"
        assert data["parentCollection"] is False

    def test_batch_keys_in_submission_order(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.post_items([
            {"itemType": "book", "title": "A"},
            {"itemType": "book", "title": "B"},
            {"itemType": "book", "title": "C"},
        ])
        keys = v3_helpers.get_successful_keys(response)
        assert len(keys) == 3

        reordered = [keys[2], keys[0], keys[1]]
        items = v3_helpers.get_item(reordered, "json")
        assert [i["key"] for i in items] == reordered
        assert [i["data"]["title"] for i in items] == ["C", "A", "B"]

    def test_mixed_batch(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.post_items([{"itemType": "book"}, {"title": "No type"}])
        assert_200_for_object(response, 0)
        assert_400_for_object(response, "'itemType' property not provided", 1)

    def test_batch_outcomes_cover_every_index(self, v3_helpers: ObjectHelpers):
        existing = v3_helpers.create_item("book", {"title": "Same"}, "key")
        data = v3_helpers.get_item(existing, "json")["data"]
        response = v3_helpers.post_items([data, {"itemType": "book"}, {"title": "No type"}])

        result = v3_helpers.parse_write_result(response)
        assert result.covers(3)
        assert set(result.unchanged) == {"0"}
        assert set(result.successful) == {"1"}
        assert set(result.failed) == {"2"}

    def test_unchanged(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Same"}, "key")
        data = v3_helpers.get_item(key, "json")["data"]
        assert_unchanged_for_object(v3_helpers.post_item(data))

    def test_stale_object_version(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Old"}, "key")
        data = v3_helpers.get_item(key, "json")["data"]
        data.update(title="New", version=data["version"] - 1)
        assert_412_for_object(v3_helpers.post_item(data))

    def test_stale_library_version(self, v3_helpers: ObjectHelpers):
        version = v3_helpers.client.get_library_version()
        response = v3_helpers.post_items([{"itemType": "book"}], [if_unmodified_since(version - 1)])
        assert_412(response)
        assert_200(v3_helpers.post_items([{"itemType": "book"}], [if_unmodified_since(version)]))

    def test_too_many_objects(self, v3_helpers: ObjectHelpers):
        assert_413(v3_helpers.post_items([{"itemType": "book"} for _ in range(51)]))

    def test_collection_name_too_long(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.post_objects("collection", [{"name": "x" * 256}])
        assert_413_for_object(response, "Collection name is too long")

    def test_missing_parent_collection(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.create_collection("Child", generate_key(), "response")
        assert_409_for_object(response)

    def test_search_needs_conditions(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.post_objects("search", [{"name": "S", "conditions": []}])
        assert_400_for_object(response, "'conditions' cannot be empty")

    def test_default_search(self, v3_helpers: ObjectHelpers):
        data = v3_helpers.create_search("Saved", None, "jsondata")
        assert data["conditions"] == [{"condition": "title", "operator": "contains", "value": "test"}]

    def test_note_with_missing_parent(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.create_note_item("<p>Orphan</p>", generate_key(), "response")
        assert_409_for_object(response)

    def test_highlight_annotation(self, v3_helpers: ObjectHelpers):
        attachment = v3_helpers.create_attachment_item("imported_file", {"title": "PDF"}, None, "key")
        data = v3_helpers.create_annotation_item(
            "highlight", {"annotationComment": "Comment"}, attachment, "jsondata"
        )
        assert data["parentItem"] == attachment
        assert data["annotationText"] == HIGHLIGHT_TEXT
        assert data["annotationComment"] == "Comment"

    def test_data_objects(self, v3_helpers: ObjectHelpers):
        for object_type in ("item", "collection", "search"):
            data = v3_helpers.create_data_object(object_type, {"deleted": True}, "jsondata")
            assert data["deleted"] is True


# =============================================================================
# Listing formats, totals and paging
# =============================================================================


class TestListing:
    def test_empty_key_list(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.client.user_get(_uid(v3_helpers), "items?format=keys")
        assert_200(response)
        assert get_keys(response) == []
        assert_num_results(response, 0)

    def test_keys_and_versions(self, v3_helpers: ObjectHelpers):
        keys = v3_helpers.get_successful_keys(
            v3_helpers.post_items([{"itemType": "book"}, {"itemType": "note"}])
        )
        keys_response = v3_helpers.client.user_get(_uid(v3_helpers), "items?format=keys")
        assert sorted(get_keys(keys_response)) == sorted(keys)

        versions = get_versions(v3_helpers.client.user_get(_uid(v3_helpers), "items?format=versions"))
        assert set(versions) == set(keys)
        assert len(set(versions.values())) == 1

    def test_total_results_and_links(self, v3_helpers: ObjectHelpers):
        v3_helpers.post_items([{"itemType": "book", "title": str(i)} for i in range(5)])

        response = v3_helpers.client.user_get(_uid(v3_helpers), "items?format=keys&limit=2")
        assert_total_results(response, 5, DIALECT_V3)
        assert_num_results(response, 2)

        links = parse_link_header(response)
        assert "prev" not in links
        assert "start=2" in links["next"]
        assert "start=4" in links["last"]

        next_page = v3_helpers.client.get(links["next"])
        assert_num_results(next_page, 2)
        assert not set(get_keys(next_page)) & set(get_keys(response))

    def test_json_count(self, v3_helpers: ObjectHelpers):
        v3_helpers.post_items([{"itemType": "book"}, {"itemType": "book"}])
        response = v3_helpers.client.user_get(_uid(v3_helpers), "items")
        assert count_results(response) == 2
        assert len(get_json(response)) == 2

    def test_bibtex_count(self, v3_helpers: ObjectHelpers):
        v3_helpers.post_items([{"itemType": "book"}, {"itemType": "journalArticle"}])
        response = v3_helpers.client.user_get(_uid(v3_helpers), "items?format=bibtex")
        assert_num_results(response, 2)

    def test_atom_feed(self, v3_helpers: ObjectHelpers):
        keys = v3_helpers.get_successful_keys(
            v3_helpers.post_items([{"itemType": "book", "title": "X"}, {"itemType": "book", "title": "Y"}])
        )
        document = v3_helpers.get_item_xml(keys)
        assert select(document, "//atom:entry/zapi:key/text()") == keys

    def test_multi_content_entry(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Multi"}, "key")
        response = v3_helpers.client.user_get(
            _uid(v3_helpers), f"items?itemKey={key}&format=atom&content=json,html"
        )
        assert v3_helpers.get_content_from_atom_response(response, "json")["title"] == "Multi"
        html = v3_helpers.get_content_from_atom_response(response, "html")
        assert "Multi" in node_text(html)

    def test_not_modified(self, v3_helpers: ObjectHelpers):
        v3_helpers.create_item("book", None, "key")
        version = v3_helpers.client.get_library_version()
        response = v3_helpers.client.user_get(
            _uid(v3_helpers), "items?format=keys", [if_modified_since(version)]
        )
        assert_304(response)
        changed = v3_helpers.client.user_get(
            _uid(v3_helpers), "items?format=keys", [if_modified_since(version - 1)]
        )
        assert_200(changed)

    def test_head(self, v3_helpers: ObjectHelpers):
        v3_helpers.create_item("book", None, "key")
        response = v3_helpers.client.user_head(_uid(v3_helpers), "items")
        assert_200(response)
        assert response.body == ""
        assert response.header("Total-Results") == "1"


# =============================================================================
# Updates, deletes and preconditions
# =============================================================================


class TestWrites:
    def test_put_preconditions(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Before"}, "key")
        data = v3_helpers.get_item(key, "json")["data"]
        version = data.pop("version")
        data["title"] = "After"

        assert_428(v3_helpers.update_object("item", key, data))
        assert_412(v3_helpers.update_object("item", key, data, version=version - 1))

        response = v3_helpers.update_object("item", key, data, version=version)
        assert_204(response)
        assert library_version(response) > version
        assert v3_helpers.get_item(key, "json")["data"]["title"] == "After"
        assert v3_helpers.get_object_version("item", key) == library_version(response)

    def test_version_in_body(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "Body"}, "key")
        data = v3_helpers.get_item(key, "json")["data"]
        data["title"] = "Body 2"
        assert_204(v3_helpers.update_object("item", key, data))

    def test_patch_keeps_other_fields(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_item("book", {"title": "T", "publisher": "P"}, "key")
        version = v3_helpers.get_object_version("item", key)
        assert_204(v3_helpers.update_object("item", key, {"title": "T2"}, version=version, patch=True))
        data = v3_helpers.get_item(key, "json")["data"]
        assert data["title"] == "T2"
        assert data["publisher"] == "P"

    def test_delete_objects(self, v3_helpers: ObjectHelpers):
        keys = v3_helpers.get_successful_keys(
            v3_helpers.post_items([{"itemType": "book"}, {"itemType": "book"}])
        )
        version = v3_helpers.client.get_library_version()

        assert_428(v3_helpers.delete_objects("item", keys))
        assert_412(v3_helpers.delete_objects("item", keys, version - 1))
        assert_204(v3_helpers.delete_objects("item", keys, version))
        assert_404(v3_helpers.client.user_get(_uid(v3_helpers), f"items/{keys[0]}"))

    def test_delete_single(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_collection("Gone", None, "key")
        version = v3_helpers.get_object_version("collection", key)
        assert_428(v3_helpers.delete_object("collection", key))
        assert_204(v3_helpers.delete_object("collection", key, version))

    def test_notifications(self, v3_helpers: ObjectHelpers):
        response = v3_helpers.post_items([{"itemType": "book"}])
        notifications = decode_notifications(response)
        assert len(notifications) == 1
        assert notifications[0]["event"] == "topicUpdated"
        assert notifications[0]["topic"] == f"/users/{_uid(v3_helpers)}"

    def test_no_notification_without_change(self, v3_helpers: ObjectHelpers):
        assert decode_notifications(v3_helpers.post_items([{"title": "invalid"}])) == []


class TestTagsAndFiles:
    def test_delete_tags(self, v3_helpers: ObjectHelpers):
        v3_helpers.create_item("book", {"tags": [{"tag": "a"}, {"tag": "b"}, {"tag": "c"}]}, "key")
        tags = v3_helpers.get_tags()
        assert_num_results(tags, 3)
        assert_total_results(tags, 3, DIALECT_V3)

        version = library_version(tags)
        assert_412(v3_helpers.delete_tags(["a", "b"], version - 1))
        assert_204(v3_helpers.delete_tags(["a", "b"], version))

        remaining = get_json(v3_helpers.get_tags())
        assert [t["tag"] for t in remaining] == ["c"]

    def test_file_view_redirect(self, v3_helpers: ObjectHelpers):
        key = v3_helpers.create_attachment_item("imported_file", None, None, "key")
        response = v3_helpers.client.user_get(_uid(v3_helpers), f"items/{key}/file/view")
        assert_302(response)
        assert response.header("Location") == f"https://files.example.org/{key}"


class TestAccess:
    def test_invalid_key(self, v3_helpers: ObjectHelpers):
        v3_helpers.client.use_api_key("NOTAREALKEY")
        response = v3_helpers.client.user_get(_uid(v3_helpers), "items")
        assert_403(response)
        assert response.body == "Invalid key"

    def test_no_key(self, v3_helpers: ObjectHelpers):
        v3_helpers.client.use_api_key(None)
        assert_403(v3_helpers.client.user_get(_uid(v3_helpers), "items"))

    def test_key_header_mode(self, v3_helpers: ObjectHelpers, suite_state):
        auth = Auth.with_key(AuthMode.HEADER_KEY, suite_state.user1_api_key)
        v3_helpers.client.use_api_key(None)
        assert_200(v3_helpers.client.user_get(_uid(v3_helpers), "items", auth=auth))

    def test_linked_url_template_has_no_filename(self, v3_helpers: ObjectHelpers):
        template = v3_helpers.get_item_template("attachment", link_mode="linked_url")
        assert template["linkMode"] == "linked_url"
        assert "filename" not in template
