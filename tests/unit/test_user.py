"""
Unit tests for users and authentication.

Tests cover:
- Credential validation in factories
- Registration without login
- Authentication and the session slot
- Account operations (password, verification, contact changes)
- User-scope buckets
"""

import pytest

from kii_sdk import KiiUser
from kii_sdk.entity import EntityState
from kii_sdk.errors import (
    PreconditionError,
    TransportError,
    ValidationError,
)


class TestFactories:
    """Tests for user construction."""

    def test_username_user(self, client):
        user = client.user_with_username("alice123", "abc123$$")
        assert user.username == "alice123"
        assert user.state == EntityState.LOCAL
        assert user.access_token is None

    @pytest.mark.parametrize("username", ["ab", "a" * 65, "has space", "bad!", ""])
    def test_invalid_username(self, client, username):
        with pytest.raises(ValidationError):
            client.user_with_username(username, "abc123$$")

    @pytest.mark.parametrize("password", ["abc", "no spaces", "bad*chars", ""])
    def test_invalid_password(self, client, password):
        with pytest.raises(ValidationError):
            client.user_with_username("alice123", password)

    def test_email_and_phone(self, client):
        user = client.user_with_username_and_email("alice123", "alice@example.com", "abc123$$")
        assert user.email == "alice@example.com"
        user = client.user_with_phone("+819012345678", "abc123$$")
        assert user.phone_number == "+819012345678"

    @pytest.mark.parametrize("email", ["alice", "alice@", "@example.com", "a b@example.com"])
    def test_invalid_email(self, client, email):
        with pytest.raises(ValidationError):
            client.user_with_email(email, "abc123$$")

    def test_invalid_phone(self, client):
        with pytest.raises(ValidationError):
            client.user_with_phone("12ab", "abc123$$")

    def test_typed_attributes_are_reserved(self, client):
        user = client.user_with_username("alice123", "abc123$$")
        assert user.set("loginName", "mallory") is False
        assert user.set("password", "x") is False
        assert user.set("favorite_color", "blue") is True

    def test_user_uri(self, client):
        user = client.user_with_uri("kiicloud://users/abc")
        assert user.uuid == "abc"
        assert user.object_uri == "kiicloud://users/abc"
        with pytest.raises(ValidationError):
            client.user_with_uri("kiicloud://groups/abc")


class TestRegistration:
    """Tests for registration and login."""

    def test_registration_does_not_log_in(self, client, transport):
        user = client.user_with_username("alice123", "abc123$$")
        user.set("age", 30)
        user.perform_registration()

        assert user.state == EntityState.SYNCED
        assert user.uuid is not None
        assert user.access_token is None
        assert not client.logged_in
        assert transport.requests[-1].json == {
            "loginName": "alice123", "age": 30, "password": "abc123$$",
        }

        logged_in = client.authenticate("alice123", "abc123$$")
        assert logged_in.uuid == user.uuid
        assert logged_in.access_token is not None
        assert client.current_user is logged_in
        assert client.logged_in

    def test_register_twice(self, client):
        user = client.user_with_username("alice123", "abc123$$").perform_registration()
        with pytest.raises(PreconditionError):
            user.perform_registration()

    def test_duplicate_username(self, client):
        client.user_with_username("alice123", "abc123$$").perform_registration()
        with pytest.raises(TransportError) as exc_info:
            client.user_with_username("alice123", "other123").perform_registration()
        assert exc_info.value.status == 409

    def test_wrong_password(self, client):
        client.user_with_username("alice123", "abc123$$").perform_registration()
        with pytest.raises(TransportError) as exc_info:
            client.authenticate("alice123", "wrong")
        assert exc_info.value.status == 400
        assert not client.logged_in

    def test_authenticate_requires_credentials(self, client, transport):
        with pytest.raises(ValidationError):
            client.authenticate("", "abc123$$")
        assert transport.requests == []

    def test_login_by_email(self, client):
        client.user_with_email("alice@example.com", "abc123$$").perform_registration()
        user = client.authenticate("alice@example.com", "abc123$$")
        assert user.email == "alice@example.com"

    def test_authenticate_with_token(self, client, alice, settings, transport):
        other = type(client)(settings, transport=transport)
        user = other.authenticate_with_token(alice.access_token)
        assert user.uuid == alice.uuid
        assert other.access_token == alice.access_token

    def test_bad_token(self, client):
        with pytest.raises(TransportError) as exc_info:
            client.authenticate_with_token("not-a-token")
        assert exc_info.value.status == 401

    def test_logout(self, client, alice):
        client.logout()
        assert not client.logged_in
        assert client.current_user is None
        assert alice.access_token is None

    def test_password_never_logged(self, client, caplog):
        with caplog.at_level("DEBUG", logger="kii_sdk"):
            client.user_with_username("alice123", "abc123$$").perform_registration()
            client.authenticate("alice123", "abc123$$")
        assert "abc123$$" not in caplog.text
        assert client.access_token not in caplog.text


class TestAccountOperations:
    """Tests for account operations."""

    def test_update_password(self, client, alice):
        alice.update_password("abc123$$", "newpass1")
        client.logout()
        with pytest.raises(TransportError):
            client.authenticate("alice123", "abc123$$")
        assert client.authenticate("alice123", "newpass1").uuid == alice.uuid

    def test_update_password_validates_new_password(self, alice):
        with pytest.raises(ValidationError):
            alice.update_password("abc123$$", "x")

    def test_reset_password(self, client, alice, transport):
        client.reset_password("alice123")
        assert transport.reset_requests() == [alice.uuid]
        assert transport.requests[-1].path.endswith("/users/LOGIN_NAME:alice123/password/request-reset")

    def test_reset_unknown_user(self, client):
        with pytest.raises(TransportError) as exc_info:
            client.reset_password("nobody@example.com")
        assert exc_info.value.status == 404

    def test_phone_verification(self, client, transport):
        user = client.user_with_username_and_phone("alice123", "+819012345678", "abc123$$")
        user.perform_registration()
        user = client.authenticate("alice123", "abc123$$")
        assert not user.phone_verified

        with pytest.raises(TransportError):
            user.verify_phone_number("wrong")
        user.resend_phone_verification()
        user.verify_phone_number(transport.verification_code(user.uuid))
        assert user.phone_verified
        assert user.refresh().phone_verified

    def test_change_email(self, alice, transport):
        alice.change_email("alice@example.org")
        assert alice.email == "alice@example.org"
        assert not alice.email_verified
        alice.resend_email_verification()
        assert transport.user_record(alice.uuid)["emailAddress"] == "alice@example.org"

    def test_resend_email_without_email(self, alice):
        with pytest.raises(TransportError) as exc_info:
            alice.resend_email_verification()
        assert exc_info.value.status == 409

    def test_change_phone(self, alice):
        alice.change_phone("+15551234567")
        assert alice.phone_number == "+15551234567"
        assert not alice.phone_verified

    def test_display_name_and_country(self, alice, transport):
        alice.display_name = "Alice"
        alice.country = "JP"
        alice.save()
        assert transport.requests[-1].method == "PATCH"
        assert transport.requests[-1].json == {"displayName": "Alice", "country": "JP"}
        assert alice.refresh().display_name == "Alice"

    def test_operations_require_registration(self, client):
        user = client.user_with_username("alice123", "abc123$$")
        with pytest.raises(PreconditionError):
            user.change_email("a@example.com")
        with pytest.raises(PreconditionError):
            user.bucket_with_name("private")

    def test_delete_user(self, client, alice):
        alice.delete()
        assert alice.stale
        with pytest.raises(TransportError):
            client.authenticate("alice123", "abc123$$")


class TestUserBuckets:
    """Tests for user-scope buckets."""

    def test_user_bucket_objects(self, client, alice):
        bucket = alice.bucket_with_name("private")
        obj = bucket.object()
        obj.set("secret", 42)
        obj.save()
        assert obj.object_uri == f"kiicloud://users/{alice.uuid}/buckets/private/objects/{obj.uuid}"

        handle = client.object_with_uri(obj.object_uri)
        assert handle.scope == bucket.scope
        assert handle.refresh().get("secret") == 42

    def test_user_file_bucket(self, alice, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("# notes")
        f = alice.file_bucket_with_name("docs").file_with_local_path(path)
        f.save_file()
        assert f.object_uri.startswith(f"kiicloud://users/{alice.uuid}/filebuckets/docs/files/")

    def test_buckets_are_isolated_by_scope(self, client, alice):
        obj = alice.bucket_with_name("shared").object()
        obj.save()
        assert client.bucket("shared").execute_query().results == []
        assert len(alice.bucket_with_name("shared").execute_query()) == 1

    def test_hydrated_user_is_kii_user(self, client, alice):
        assert isinstance(client.current_user, KiiUser)
