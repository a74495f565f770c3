"""Suite Setup - Prepares the server for a test run.

``test/setup`` wipes both test users and issues fresh API keys. Group setup
then reconciles the groups owned by the test users against the fixed set
the suite expects:

    PublicOpen    owned by user 1, readable by all
    PublicClosed  owned by user 1, readable by members
    Private       owned by user 1, named "Private Test Group", user 2 a member
    Private       owned by user 2

Missing groups are created, any other group of user 1 is deleted, and every
kept group is cleared.
"""

from __future__ import annotations

from typing import Any

from zotero_remote.client import ApiClient, ClientError, expect_status
from zotero_remote.models import SuiteState
from zotero_remote.normalizer import MalformedBodyError, get_json
from zotero_remote.objects import ObjectHelpers


PRIVATE_GROUP_NAME = "Private Test Group"


class SuiteSetupError(ClientError):
    """Raised when the server cannot be brought into the expected state."""


def request_api_keys(client: ApiClient) -> tuple[str, str]:
    """Reset both test users and return their new API keys."""
    config = client.config
    response = client.post(
        f"test/setup?u={config.user_id}&u2={config.user_id2}",
        " ",
        auth=client.root_auth(),
    )
    try:
        document = get_json(response)
        return document["user1"]["apiKey"], document["user2"]["apiKey"]
    except (MalformedBodyError, KeyError, TypeError) as e:
        raise SuiteSetupError(f"Invalid test setup response ({response.describe()})") from e


def set_up_groups(client: ApiClient, state: SuiteState) -> SuiteState:
    """Reconcile the owned groups and record their ids on ``state``."""
    helpers = ObjectHelpers(client)
    user_id = client.user_id
    user_id2 = client.user_id2

    response = expect_status(
        client.super_get(f"users/{user_id}/groups?format=json"), 200, "Listing groups failed"
    )
    groups: list[dict[str, Any]] = get_json(response)
    if not isinstance(groups, list):
        raise SuiteSetupError(f"Group list is not a JSON array ({response.describe()})")

    public_id: int | None = None
    public_no_anonymous_id: int | None = None
    private_id: int | None = None
    private_id2: int | None = None
    to_delete: list[int] = []
    kept: list[int] = []

    for group in groups:
        data = group.get("data", group)
        group_id = int(data["id"])
        group_type = data.get("type")
        owner = int(data.get("owner", 0))
        reading = data.get("libraryReading")

        if public_id is None and group_type == "PublicOpen" and owner == user_id and reading == "all":
            public_id = group_id
        elif (
            public_no_anonymous_id is None
            and group_type == "PublicClosed"
            and owner == user_id
            and reading == "members"
        ):
            public_no_anonymous_id = group_id
        elif group_type == "Private" and owner == user_id and data.get("name") == PRIVATE_GROUP_NAME:
            private_id = group_id
        elif group_type == "Private" and owner == user_id2:
            private_id2 = group_id
        else:
            to_delete.append(group_id)
            continue
        kept.append(group_id)

    if public_id is None:
        public_id = helpers.create_group(
            {"owner": user_id, "type": "PublicOpen", "libraryReading": "all"}
        )
    if public_no_anonymous_id is None:
        public_no_anonymous_id = helpers.create_group(
            {"owner": user_id, "type": "PublicClosed", "libraryReading": "members"}
        )
    if private_id is None:
        private_id = helpers.create_group(
            {
                "owner": user_id,
                "name": PRIVATE_GROUP_NAME,
                "type": "Private",
                "libraryReading": "members",
                "fileEditing": "members",
                "members": [user_id2],
            }
        )
    if private_id2 is None:
        private_id2 = helpers.create_group(
            {
                "owner": user_id2,
                "type": "Private",
                "libraryReading": "members",
                "fileEditing": "members",
            }
        )

    for group_id in to_delete:
        helpers.delete_group(group_id)

    for group_id in kept:
        client.group_clear(group_id)

    return state.model_copy(
        update={
            "owned_public_group_id": public_id,
            "owned_public_no_anonymous_group_id": public_no_anonymous_id,
            "owned_private_group_id": private_id,
            "owned_private_group_id2": private_id2,
            "owned_private_group_name": PRIVATE_GROUP_NAME,
            "num_owned_groups": 3,
            "num_public_groups": 2,
        }
    )


def run_suite_setup(client: ApiClient) -> SuiteState:
    """Full bootstrap: fresh keys, reconciled groups, client left on user 1's key."""
    user1_key, user2_key = request_api_keys(client)
    client.use_api_key(user1_key)
    state = SuiteState(user1_api_key=user1_key, user2_api_key=user2_key)
    state = set_up_groups(client, state)
    client.use_api_key(user1_key)
    client.use_api_version(client.dialect.api_version)
    return state
