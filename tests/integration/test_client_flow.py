"""
Integration tests for complete client flows against InMemoryTransport.

Tests cover:
- Registration, authentication and logout of alice123
- Objects, files, groups and ACLs used together
- The same flow driven through the callback forms on a worker
"""

import threading

import pytest

from kii_sdk import Clause, EventLoopWorker, KiiClient, Permission, Query, Subject
from kii_sdk.entity import EntityState
from kii_sdk.errors import (
    InvalidQueryError,
    InvalidStateError,
    PreconditionError,
    StaleEntityError,
)
from kii_sdk.files import TrashState


class TestAliceScenario:
    """Registration and authentication of a username user."""

    def test_register_then_authenticate(self, client):
        alice = client.user_with_username("alice123", "abc123$$")
        alice.perform_registration()

        assert alice.state == EntityState.SYNCED
        assert alice.uuid is not None
        assert alice.access_token is None

        session_user = client.authenticate("alice123", "abc123$$")
        assert session_user.access_token is not None
        assert session_user.uuid == alice.uuid
        assert session_user.username == "alice123"

    def test_requests_carry_token_after_login(self, client, transport, alice):
        transport.clear_requests()
        client.bucket("notes").object().save()
        assert transport.requests[-1].access_token == alice.access_token

        client.logout()
        client.bucket("notes").object().save()
        assert transport.requests[-1].access_token is None


class TestSharedNotes:
    """Objects shared between two users through ACLs and groups."""

    def test_share_object_with_group(self, client, alice, bob):
        team = client.group_with_name("team", members=[bob]).save()

        note = alice.bucket_with_name("notes").object()
        note.set("text", "draft")
        note.save()

        note.acl.add_entry(Subject.group(team), Permission.READ)
        note.acl.add_entry(Subject.user(bob), Permission.WRITE)
        note.acl.revoke_entry(Subject.user(bob), Permission.WRITE)
        note.acl.save()

        assert note.acl.contains(Subject.group(team), Permission.READ)
        assert not note.acl.contains(Subject.user(bob), Permission.WRITE)

        fresh = client.object_with_uri(note.object_uri)
        fresh.acl.refresh()
        assert fresh.acl.contains(Subject.group(team), "read")

    def test_query_after_updates(self, client, alice):
        bucket = client.bucket("scores")
        for name, score in (("a", 10), ("b", 30), ("c", 20)):
            obj = bucket.object()
            obj.set("name", name)
            obj.set("score", score)
            obj.save()

        query = Query.with_clause(Clause.greater_than_or_equal("score", 20))
        query.limit = 50
        query.sort_by_asc("name")
        query.sort_by_desc("score")
        assert [o.get("name") for o in bucket.execute_query(query)] == ["b", "c"]

        query.limit = 150
        with pytest.raises(InvalidQueryError):
            bucket.execute_query(query)


class TestFileFlow:
    """Upload, share, trash and shred a file."""

    def test_file_lifecycle(self, client, alice, tmp_path):
        source = tmp_path / "report.csv"
        source.write_text("a,b\n1,2\n")
        reports = alice.file_bucket_with_name("reports")

        report = reports.file_with_local_path(source)
        report.title = "Q3"
        report.save_file()
        assert report.mime_type == "text/csv"

        url = report.publish()
        assert url

        report.move_to_trash()
        with pytest.raises(InvalidStateError):
            report.move_to_trash()
        assert reports.execute_query().results == []

        report.restore_from_trash()
        assert [f.uuid for f in reports.execute_query()] == [report.uuid]

        with pytest.raises(InvalidStateError):
            report.shred()
        report.move_to_trash()
        report.shred()
        assert report.state == EntityState.DELETED
        assert report.trash_state == TrashState.SHREDDED
        with pytest.raises(StaleEntityError):
            report.get_body(tmp_path / "copy.csv")


class TestBackgroundFlow:
    """The same operations through the callback forms."""

    def _wait(self, start):
        done = threading.Event()
        outcome = {}

        def on_complete(result, error):
            outcome["result"] = result
            outcome["error"] = error
            done.set()

        start(on_complete)
        assert done.wait(timeout=5)
        return outcome

    def test_register_and_authenticate(self, background_client):
        alice = background_client.user_with_username("alice123", "abc123$$")
        outcome = self._wait(alice.perform_registration_in_background)
        assert outcome["error"] is None
        assert outcome["result"] is alice
        assert alice.state == EntityState.SYNCED

        outcome = self._wait(lambda cb: background_client.authenticate_in_background(
            "alice123", "abc123$$", cb
        ))
        assert outcome["error"] is None
        assert outcome["result"].access_token is not None
        assert background_client.logged_in

    def test_errors_reach_handler(self, background_client):
        obj = background_client.bucket("notes").object()
        outcome = self._wait(obj.delete_in_background)
        assert outcome["result"] is None
        assert isinstance(outcome["error"], PreconditionError)

    def test_query_in_background(self, background_client):
        bucket = background_client.bucket("notes")
        obj = bucket.object()
        obj.set("n", 1)
        obj.save()

        outcome = self._wait(lambda cb: bucket.execute_query_in_background(Query(), cb))
        assert [o.uuid for o in outcome["result"]] == [obj.uuid]

    def test_handlers_use_caller_dispatch(self, settings, transport):
        posted = []
        with EventLoopWorker(dispatch=posted.append) as worker:
            client = KiiClient(settings, transport=transport, worker=worker)
            obj = client.bucket("notes").object()
            seen = []
            obj.save_in_background(lambda r, e: seen.append((r, e))).result(timeout=5)
            for _ in range(100):
                if posted:
                    break
                threading.Event().wait(0.01)
        assert seen == []
        posted[0]()
        assert seen == [(obj, None)]
