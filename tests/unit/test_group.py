"""
Unit tests for groups.

Tests cover:
- Creation with owner and members
- Staged member changes
- Renaming
- Membership queries
- Group-scope buckets
"""

import pytest

from kii_sdk.entity import EntityState
from kii_sdk.errors import PreconditionError, TransportError, ValidationError


class TestGroupCreation:
    """Tests for creating groups."""

    def test_create_with_members(self, client, alice, bob, transport):
        group = client.group_with_name("reviewers", members=[bob])
        assert group.state == EntityState.LOCAL
        group.save()

        assert group.uuid is not None
        assert group.owner_id == alice.uuid
        assert group.members == {alice.uuid, bob.uuid}
        assert transport.group_members(group.uuid) == {alice.uuid, bob.uuid}
        assert transport.requests[-1].json == {
            "name": "reviewers", "owner": alice.uuid, "members": [bob.uuid],
        }

    def test_name_required(self, client):
        with pytest.raises(ValidationError):
            client.group_with_name("  ")

    def test_unsaved_member_rejected(self, client):
        carol = client.user_with_username("carol", "pass1234")
        with pytest.raises(PreconditionError):
            client.group_with_name("g", members=[carol])

    def test_no_custom_fields(self, client):
        group = client.group_with_name("g")
        assert group.set("color", "red") is False
        assert group.set("name", "other") is False

    def test_group_uri(self, client, alice):
        group = client.group_with_name("g").save()
        assert group.object_uri == f"kiicloud://groups/{group.uuid}"
        handle = client.group_with_uri(group.object_uri)
        assert handle.refresh().name == "g"


class TestMembership:
    """Tests for member staging."""

    @pytest.fixture
    def group(self, client, alice):
        return client.group_with_name("team").save()

    def test_add_and_remove(self, group, bob, transport):
        group.add_user(bob)
        assert group.state == EntityState.DIRTY
        assert group.pending_adds == {bob.uuid}
        group.save()
        assert bob.uuid in transport.group_members(group.uuid)
        assert group.state == EntityState.SYNCED

        group.remove_user(bob.uuid)
        group.save()
        assert bob.uuid not in transport.group_members(group.uuid)
        assert bob.uuid not in group.members

    def test_add_then_remove_cancels(self, group, bob, transport):
        transport.clear_requests()
        group.add_user(bob)
        group.remove_user(bob)
        group.save()
        assert transport.requests == []

    def test_failed_member_change_kept(self, group, bob, transport):
        group.add_user(bob)
        transport.fail_next(500)
        with pytest.raises(TransportError):
            group.save()
        assert group.pending_adds == {bob.uuid}
        group.save()
        assert group.pending_adds == frozenset()

    def test_get_members(self, group, alice, bob):
        group.add_user(bob).save()
        members = group.get_members()
        assert sorted(m.uuid for m in members) == sorted([alice.uuid, bob.uuid])
        assert all(m.state == EntityState.SYNCED for m in members)

    def test_member_of_groups(self, client, alice, bob, group):
        group.add_user(bob).save()
        other = client.group_with_name("other").save()
        assert {g.uuid for g in bob.member_of_groups()} == {group.uuid}
        assert {g.uuid for g in alice.member_of_groups()} == {group.uuid, other.uuid}

    def test_refresh_drops_staged_members(self, group, bob):
        group.add_user(bob)
        group.refresh()
        assert group.pending_adds == frozenset()

    def test_change_name(self, client, group, transport):
        group.change_name("renamed")
        assert transport.requests[-1].method == "PATCH"
        assert transport.requests[-1].json == {"name": "renamed"}
        assert client.group_with_uri(group.object_uri).refresh().name == "renamed"

    def test_change_name_requires_uuid(self, client):
        with pytest.raises(PreconditionError):
            client.group_with_name("g").change_name("h")

    def test_delete(self, client, group):
        handle = client.group_with_uri(group.object_uri)
        group.delete()
        assert group.stale
        with pytest.raises(TransportError):
            handle.refresh()


class TestGroupBuckets:
    """Tests for group-scope buckets."""

    def test_group_bucket(self, client, alice):
        group = client.group_with_name("team").save()
        obj = group.bucket_with_name("board").object()
        obj.set("topic", "release")
        obj.save()
        assert obj.object_uri == f"kiicloud://groups/{group.uuid}/buckets/board/objects/{obj.uuid}"
        assert client.object_with_uri(obj.object_uri).refresh().get("topic") == "release"

    def test_group_file_bucket_requires_uuid(self, client):
        with pytest.raises(PreconditionError):
            client.group_with_name("team").file_bucket_with_name("files")
