"""
In-memory backend for testing.

This module provides a simulated Kii backend for:
- Unit tests
- Integration tests of the entity and client layers
- Local development without network access

It understands the same resource paths as the REST API: users, login,
groups and memberships, object and file buckets in app, user and group
scope, queries, ACLs, file bodies, trash and publication.

Invariants:
    - All data is lost on process exit
    - Modification timestamps strictly increase
    - An ACL batch is applied entirely or not at all
    - Thread-safe: state changes are guarded by a lock

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the Transport protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import threading
import time
import uuid as uuid_module
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs

from ..acl import ANONYMOUS_USER, ANY_AUTHENTICATED_USER, Permission
from ..errors import TransportError
from ..query import MAX_LIMIT
from .base import (
    JSON_CONTENT_TYPE,
    OCTET_STREAM,
    ProgressCallback,
    TransportResponse,
    error_for_status,
)

logger = logging.getLogger(__name__)

_SCOPE = r"(?P<scope>(?:/(?:users|groups)/[^/]+)?)"
_BUCKET = _SCOPE + r"/(?P<kind>buckets|filebuckets)/(?P<bucket>[^/]+)"
_FILE = _SCOPE + r"/filebuckets/(?P<bucket>[^/]+)/files/(?P<id>[^/]+)"

# Attributes a full-body replacement keeps
_USER_PROTECTED = frozenset({
    "loginName", "emailAddress", "phoneNumber",
    "emailAddressVerified", "phoneNumberVerified",
})
# Typed user attributes survive a full replacement unless the body sets them
_USER_KEPT = _USER_PROTECTED | {"displayName", "country"}
_FILE_PROTECTED = frozenset({"mimeType", "fileSize", "hasBody", "trashed"})
_GROUP_PROTECTED = frozenset({"owner"})


@dataclass
class RecordedRequest:
    """A request seen by the in-memory backend."""

    method: str
    path: str
    json: Any = None
    content_type: str | None = None
    access_token: str | None = None


@dataclass
class _Failure:
    status: int | None
    body: Any


class InMemoryTransport:
    """In-memory implementation of Transport for testing.

    Attributes:
        requests: Every request received, in order
        chunk_size: Chunk size used to report transfer progress

    Thread safety:
        Uses a threading lock, so it can serve the caller's loop and a
        worker loop at the same time.

    Example:
        >>> transport = InMemoryTransport()
        >>> client = KiiClient(settings, transport=transport)
        >>> client.user_with_username("alice123", "abc123$$").perform_registration()
        >>> transport.requests[-1].path
        '/apps/my-app/users'
    """

    def __init__(self, chunk_size: int = 64 * 1024) -> None:
        self.chunk_size = chunk_size
        self.requests: list[RecordedRequest] = []
        self._lock = threading.Lock()
        self._last_ms = 0
        self._failures: list[_Failure] = []

        self._users: dict[str, dict[str, Any]] = {}
        self._passwords: dict[str, str] = {}
        self._tokens: dict[str, str] = {}
        self._verification_codes: dict[str, str] = {}
        self._reset_requests: list[str] = []

        self._groups: dict[str, dict[str, Any]] = {}
        self._members: dict[str, set[str]] = {}

        self._buckets: dict[tuple[str, str, str], dict[str, dict[str, Any]]] = {}
        self._bodies: dict[tuple[str, str, str], bytes] = {}
        self._acls: dict[str, set[tuple[str, str]]] = {}
        self._published: dict[str, tuple[str, str, str]] = {}

        self._routes: list[tuple[str | None, re.Pattern[str], Callable[..., Any]]] = [
            ("POST", re.compile(r"/oauth2/token"), self._login),
            ("POST", re.compile(r"/users"), self._register),
            ("GET", re.compile(r"/users/me"), self._me),
            ("PUT", re.compile(r"/users/(?P<user>[^/]+)/password"), self._change_password),
            ("POST", re.compile(r"/users/(?P<user>[^/]+)/password/request-reset"),
             self._request_reset),
            ("POST", re.compile(r"/users/(?P<user>[^/]+)/phone-number/verify"),
             self._verify_phone),
            ("POST", re.compile(
                r"/users/(?P<user>[^/]+)/(?P<channel>email-address|phone-number)"
                r"/resend-verification"), self._resend_verification),
            ("PUT", re.compile(
                r"/users/(?P<user>[^/]+)/(?P<channel>email-address|phone-number)"),
             self._change_contact),
            ("GET", re.compile(r"/groups"), self._list_groups),
            ("POST", re.compile(r"/groups"), self._create_group),
            ("GET", re.compile(r"/groups/(?P<group>[^/]+)/members"), self._list_members),
            (None, re.compile(r"/groups/(?P<group>[^/]+)/members/(?P<user>[^/]+)"),
             self._member),
            (None, re.compile(r"(?P<resource>/.+)/acl"), self._acl),
            ("POST", re.compile(_SCOPE + r"/buckets/(?P<bucket>[^/]+)/objects"),
             self._create_object),
            ("POST", re.compile(_SCOPE + r"/filebuckets/(?P<bucket>[^/]+)/files"),
             self._create_file),
            ("POST", re.compile(_BUCKET + r"/query"), self._query),
            ("DELETE", re.compile(_BUCKET), self._drop_bucket),
            (None, re.compile(_FILE + r"/body"), self._body),
            (None, re.compile(_FILE + r"/trash"), self._trash),
            ("POST", re.compile(_FILE + r"/publish"), self._publish),
            (None, re.compile(_BUCKET + r"/(?:objects|files)/(?P<id>[^/]+)"),
             self._bucket_record),
            (None, re.compile(r"/users/(?P<user>[^/]+)"), self._user_record),
            (None, re.compile(r"/groups/(?P<group>[^/]+)"), self._group_record),
        ]

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail_next(self, status: int | None = 500, body: Any = None, count: int = 1) -> None:
        """Make the next requests fail.

        Args:
            status: HTTP status to answer with, None for a network failure
            body: Error body returned with the status
            count: Number of requests to fail
        """
        with self._lock:
            self._failures.extend(_Failure(status, body) for _ in range(count))

    def clear_requests(self) -> None:
        self.requests.clear()

    def verification_code(self, user_id: str) -> str | None:
        """Phone verification code last issued to a user."""
        with self._lock:
            return self._verification_codes.get(user_id)

    def user_record(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._users.get(user_id)
            return dict(record) if record is not None else None

    def group_members(self, group_id: str) -> set[str]:
        with self._lock:
            return set(self._members.get(group_id, set()))

    def reset_requests(self) -> list[str]:
        """User ids that requested a password reset."""
        with self._lock:
            return list(self._reset_requests)

    def published_body(self, url: str) -> bytes | None:
        """Body served at a published URL, None if the URL is unknown."""
        with self._lock:
            key = self._published.get(url)
            return self._bodies.get(key) if key is not None else None

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        content_type: str | None = None,
        access_token: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> TransportResponse:
        self.requests.append(RecordedRequest(method, path, json, content_type, access_token))
        self._raise_injected_failure(method, path)

        if content is not None and progress is not None:
            total = len(content)
            for offset in range(0, total, self.chunk_size):
                progress(min(offset + self.chunk_size, total) / total)
            progress(1.0)

        with self._lock:
            result = self._dispatch(method, path, json, content, content_type, access_token)

        logger.debug(f"{method} {path} handled in memory")
        if isinstance(result, bytes):
            return TransportResponse(
                status=200, content=result, headers={"Content-Type": OCTET_STREAM}
            )
        if result is None:
            return TransportResponse(status=204)
        return TransportResponse(
            status=200, data=result, headers={"Content-Type": JSON_CONTENT_TYPE}
        )

    async def download(
        self,
        path: str,
        destination: Path,
        *,
        access_token: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> int:
        response = await self.send("GET", path, access_token=access_token)
        body = response.content or b""
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
        f = await asyncio.to_thread(open, destination, "wb")
        try:
            for offset in range(0, len(body), self.chunk_size):
                chunk = body[offset:offset + self.chunk_size]
                await asyncio.to_thread(f.write, chunk)
                if progress is not None:
                    progress((offset + len(chunk)) / len(body))
        finally:
            await asyncio.to_thread(f.close)
        if progress is not None:
            progress(1.0)
        return len(body)

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _raise_injected_failure(self, method: str, path: str) -> None:
        with self._lock:
            failure = self._failures.pop(0) if self._failures else None
        if failure is None:
            return
        if failure.status is None:
            raise TransportError(
                f"{method} {path} failed: injected network failure",
                status=None,
                method=method,
                path=path,
            )
        raise error_for_status(failure.status, method, path, failure.body)

    def _dispatch(
        self,
        method: str,
        path: str,
        body: Any,
        content: bytes | None,
        content_type: str | None,
        token: str | None,
    ) -> Any:
        path, _, query_string = path.partition("?")
        match = re.fullmatch(r"/apps/[^/]+(?P<rest>/.*)", path)
        if match is None:
            raise self._error(404, "APP_NOT_FOUND", method, path)
        rest = match.group("rest")

        request = _Request(
            method=method,
            path=path,
            body=body if isinstance(body, dict) else {},
            content=content,
            content_type=content_type,
            token=token,
            params={k: v[0] for k, v in parse_qs(query_string).items()},
        )
        for route_method, pattern, handler in self._routes:
            if route_method is not None and route_method != method:
                continue
            route = pattern.fullmatch(rest)
            if route is not None:
                return handler(request, **route.groupdict())
        raise self._error(404, "NOT_FOUND", method, path)

    def _error(self, status: int, code: str, method: str, path: str, **extra: Any) -> TransportError:
        return error_for_status(status, method, path, {"errorCode": code, **extra})

    def _now(self) -> int:
        now = int(time.time() * 1000)
        self._last_ms = max(now, self._last_ms + 1)
        return self._last_ms

    def _new_record(self, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        record = {k: v for k, v in fields.items() if not k.startswith("_")}
        record.update({"_id": uuid_module.uuid4().hex, "_created": now, "_modified": now})
        return record

    def _token_user(self, request: _Request) -> str | None:
        if request.token is None:
            return None
        user_id = self._tokens.get(request.token)
        if user_id is None:
            raise self._error(401, "INVALID_ACCESS_TOKEN", request.method, request.path)
        return user_id

    def _grant_owner(self, request: _Request, resource: str) -> None:
        user_id = self._token_user(request)
        if user_id is not None:
            self._acls[resource] = {
                (f"UserID:{user_id}", Permission.READ.value),
                (f"UserID:{user_id}", Permission.WRITE.value),
            }

    def _update_record(
        self,
        request: _Request,
        record: dict[str, Any],
        protected: frozenset[str] = frozenset(),
        kept_on_replace: frozenset[str] | None = None,
    ) -> dict[str, Any]:
        fields = {k: v for k, v in request.body.items() if not k.startswith("_")}
        if request.method == "PUT":
            survivors = protected if kept_on_replace is None else kept_on_replace
            kept = {k: v for k, v in record.items() if k.startswith("_") or k in survivors}
            record.clear()
            record.update(kept)
        record.update({k: v for k, v in fields.items() if k not in protected})
        record["_modified"] = self._now()
        return {"_modified": record["_modified"]}

    def _drop_acls(self, resource: str) -> None:
        for key in [k for k in self._acls if k == resource or k.startswith(resource + "/")]:
            del self._acls[key]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _find_user(self, identifier: str) -> str | None:
        if identifier in self._users:
            return identifier
        attribute = "loginName"
        for prefix, name in (("EMAIL:", "emailAddress"), ("PHONE:", "phoneNumber"),
                             ("LOGIN_NAME:", "loginName")):
            if identifier.startswith(prefix):
                identifier, attribute = identifier[len(prefix):], name
                break
        for user_id, record in self._users.items():
            if record.get(attribute) == identifier:
                return user_id
        return None

    def _require_user(self, request: _Request, user: str) -> dict[str, Any]:
        if user == "me":
            user = self._token_user(request) or ""
        record = self._users.get(user)
        if record is None:
            raise self._error(404, "USER_NOT_FOUND", request.method, request.path)
        return record

    def _register(self, request: _Request) -> dict[str, Any]:
        body = request.body
        password = body.get("password")
        if not password:
            raise self._error(400, "PASSWORD_REQUIRED", request.method, request.path)
        for attribute in ("loginName", "emailAddress", "phoneNumber"):
            value = body.get(attribute)
            if value is not None and any(
                r.get(attribute) == value for r in self._users.values()
            ):
                raise self._error(
                    409, "USER_ALREADY_EXISTS", request.method, request.path,
                    message=f"{attribute} already taken",
                )
        fields = {k: v for k, v in body.items() if k != "password"}
        if "emailAddress" in fields:
            fields["emailAddressVerified"] = False
        if "phoneNumber" in fields:
            fields["phoneNumberVerified"] = False
        record = self._new_record(fields)
        user_id = record["_id"]
        self._users[user_id] = record
        self._passwords[user_id] = password
        if "phoneNumber" in fields:
            self._issue_code(user_id)
        return {k: record[k] for k in ("_id", "_created", "_modified")}

    def _login(self, request: _Request) -> dict[str, Any]:
        username = request.body.get("username", "")
        user_id = None
        for candidate, record in self._users.items():
            if username in (
                record.get("loginName"), record.get("emailAddress"), record.get("phoneNumber")
            ):
                user_id = candidate
                break
        if user_id is None or self._passwords.get(user_id) != request.body.get("password"):
            raise self._error(
                400, "invalid_grant", request.method, request.path,
                message="The user was not found or the password is wrong",
            )
        token = secrets.token_hex(16)
        self._tokens[token] = user_id
        return {"access_token": token, "id": user_id, "token_type": "Bearer"}

    def _me(self, request: _Request) -> dict[str, Any]:
        user_id = self._token_user(request)
        if user_id is None:
            raise self._error(401, "ACCESS_TOKEN_REQUIRED", request.method, request.path)
        return dict(self._require_user(request, user_id))

    def _user_record(self, request: _Request, user: str) -> dict[str, Any] | None:
        record = self._require_user(request, user)
        if request.method == "GET":
            return dict(record)
        if request.method in ("PATCH", "PUT"):
            return self._update_record(request, record, _USER_PROTECTED, _USER_KEPT)
        if request.method == "DELETE":
            user_id = record["_id"]
            del self._users[user_id]
            self._passwords.pop(user_id, None)
            for token in [t for t, u in self._tokens.items() if u == user_id]:
                del self._tokens[token]
            for members in self._members.values():
                members.discard(user_id)
            self._drop_acls(f"/users/{user_id}")
            return None
        raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

    def _change_password(self, request: _Request, user: str) -> None:
        record = self._require_user(request, user)
        user_id = record["_id"]
        if self._passwords.get(user_id) != request.body.get("oldPassword"):
            raise self._error(403, "WRONG_PASSWORD", request.method, request.path)
        self._passwords[user_id] = request.body["newPassword"]
        return None

    def _request_reset(self, request: _Request, user: str) -> None:
        user_id = self._find_user(user)
        if user_id is None:
            raise self._error(404, "USER_NOT_FOUND", request.method, request.path)
        self._reset_requests.append(user_id)
        return None

    def _issue_code(self, user_id: str) -> None:
        self._verification_codes[user_id] = f"{secrets.randbelow(10**6):06d}"

    def _verify_phone(self, request: _Request, user: str) -> None:
        record = self._require_user(request, user)
        code = self._verification_codes.get(record["_id"])
        if code is None or request.body.get("verificationCode") != code:
            raise self._error(400, "INVALID_VERIFICATION_CODE", request.method, request.path)
        del self._verification_codes[record["_id"]]
        record["phoneNumberVerified"] = True
        return None

    def _resend_verification(self, request: _Request, user: str, channel: str) -> None:
        record = self._require_user(request, user)
        attribute = "emailAddress" if channel == "email-address" else "phoneNumber"
        if attribute not in record:
            raise self._error(409, f"{attribute.upper()}_NOT_SET", request.method, request.path)
        if channel == "phone-number":
            self._issue_code(record["_id"])
        return None

    def _change_contact(self, request: _Request, user: str, channel: str) -> dict[str, Any]:
        record = self._require_user(request, user)
        attribute = "emailAddress" if channel == "email-address" else "phoneNumber"
        value = request.body.get(attribute)
        if not value:
            raise self._error(400, f"{attribute.upper()}_REQUIRED", request.method, request.path)
        if any(r.get(attribute) == value and r is not record for r in self._users.values()):
            raise self._error(409, "USER_ALREADY_EXISTS", request.method, request.path)
        record[attribute] = value
        record[f"{attribute}Verified"] = False
        if channel == "phone-number":
            self._issue_code(record["_id"])
        record["_modified"] = self._now()
        return {"_modified": record["_modified"]}

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _require_group(self, request: _Request, group: str) -> dict[str, Any]:
        record = self._groups.get(group)
        if record is None:
            raise self._error(404, "GROUP_NOT_FOUND", request.method, request.path)
        return record

    def _create_group(self, request: _Request) -> dict[str, Any]:
        body = request.body
        if not body.get("name"):
            raise self._error(400, "GROUP_NAME_REQUIRED", request.method, request.path)
        members = set(body.get("members") or [])
        owner = body.get("owner")
        if owner:
            members.add(owner)
        unknown = sorted(m for m in members if m not in self._users)
        if unknown:
            raise self._error(
                400, "USER_NOT_FOUND", request.method, request.path, message=f"Unknown {unknown}"
            )
        record = self._new_record({"name": body["name"], "owner": owner})
        self._groups[record["_id"]] = record
        self._members[record["_id"]] = members
        self._grant_owner(request, f"/groups/{record['_id']}")
        return {k: record[k] for k in ("_id", "_created", "_modified")}

    def _group_record(self, request: _Request, group: str) -> dict[str, Any] | None:
        record = self._require_group(request, group)
        if request.method == "GET":
            return dict(record)
        if request.method in ("PATCH", "PUT"):
            return self._update_record(request, record, _GROUP_PROTECTED)
        if request.method == "DELETE":
            del self._groups[group]
            self._members.pop(group, None)
            self._drop_acls(f"/groups/{group}")
            for key in [k for k in self._buckets if k[0] == f"/groups/{group}"]:
                del self._buckets[key]
            return None
        raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

    def _list_groups(self, request: _Request) -> dict[str, Any]:
        member = request.params.get("is_member")
        groups = [
            dict(record)
            for group_id, record in self._groups.items()
            if member is None or member in self._members.get(group_id, set())
        ]
        return {"groups": groups}

    def _list_members(self, request: _Request, group: str) -> dict[str, Any]:
        self._require_group(request, group)
        return {"members": [{"userID": m} for m in sorted(self._members[group])]}

    def _member(self, request: _Request, group: str, user: str) -> None:
        self._require_group(request, group)
        if request.method == "PUT":
            if user not in self._users:
                raise self._error(404, "USER_NOT_FOUND", request.method, request.path)
            self._members[group].add(user)
            return None
        if request.method == "DELETE":
            if user not in self._members[group]:
                raise self._error(404, "MEMBER_NOT_FOUND", request.method, request.path)
            self._members[group].discard(user)
            return None
        raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

    # ------------------------------------------------------------------
    # ACLs
    # ------------------------------------------------------------------

    def _resource_exists(self, resource: str) -> bool:
        match = re.fullmatch(r"/(users|groups)/([^/]+)", resource)
        if match is not None:
            store = self._users if match.group(1) == "users" else self._groups
            return match.group(2) in store
        match = re.fullmatch(_BUCKET + r"(?:/(?:objects|files)/(?P<id>[^/]+))?", resource)
        if match is None or not self._scope_exists(match.group("scope")):
            return False
        if match.group("id") is None:
            return True
        records = self._buckets.get((match.group("scope"), match.group("kind"), match.group("bucket")))
        return records is not None and match.group("id") in records

    def _subject_known(self, subject: str) -> bool:
        kind, _, subject_id = subject.partition(":")
        if kind == "UserID":
            return subject_id in (ANY_AUTHENTICATED_USER, ANONYMOUS_USER) or subject_id in self._users
        if kind == "GroupID":
            return subject_id in self._groups
        return False

    def _acl(self, request: _Request, resource: str) -> dict[str, Any] | None:
        if not self._resource_exists(resource):
            raise self._error(404, "RESOURCE_NOT_FOUND", request.method, request.path)
        entries = self._acls.setdefault(resource, set())
        if request.method == "GET":
            return {
                "entries": [
                    {"subject": s, "permission": p} for s, p in sorted(entries)
                ]
            }
        if request.method != "POST":
            raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

        grants = request.body.get("grant", [])
        revokes = request.body.get("revoke", [])
        for entry in list(grants) + list(revokes):
            valid_permission = entry.get("permission") in {p.value for p in Permission}
            if not valid_permission or not self._subject_known(entry.get("subject", "")):
                raise self._error(
                    400, "ACL_ENTRY_REJECTED", request.method, request.path,
                    rejectedEntry=entry,
                    message=f"Rejected ACL entry {entry.get('subject')}",
                )
        for entry in grants:
            entries.add((entry["subject"], entry["permission"]))
        for entry in revokes:
            entries.discard((entry["subject"], entry["permission"]))
        return None

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def _scope_exists(self, scope: str) -> bool:
        if not scope:
            return True
        _, kind, owner = scope.split("/")
        return owner in (self._users if kind == "users" else self._groups)

    def _bucket(self, request: _Request, scope: str, kind: str, bucket: str,
                create: bool = False) -> dict[str, dict[str, Any]]:
        if not self._scope_exists(scope):
            raise self._error(404, "SCOPE_NOT_FOUND", request.method, request.path)
        key = (scope, kind, bucket)
        if key not in self._buckets:
            if not create:
                raise self._error(404, "BUCKET_NOT_FOUND", request.method, request.path)
            self._buckets[key] = {}
        return self._buckets[key]

    def _create_object(self, request: _Request, scope: str, bucket: str) -> dict[str, Any]:
        records = self._bucket(request, scope, "buckets", bucket, create=True)
        record = self._new_record(request.body)
        records[record["_id"]] = record
        self._grant_owner(request, f"{scope}/buckets/{bucket}/objects/{record['_id']}")
        return {k: record[k] for k in ("_id", "_created", "_modified")}

    def _create_file(self, request: _Request, scope: str, bucket: str) -> dict[str, Any]:
        records = self._bucket(request, scope, "filebuckets", bucket, create=True)
        fields = {k: v for k, v in request.body.items() if k not in _FILE_PROTECTED}
        record = self._new_record(fields)
        record.update({
            "mimeType": request.body.get("mimeType") or OCTET_STREAM,
            "fileSize": 0,
            "hasBody": False,
            "trashed": False,
        })
        records[record["_id"]] = record
        self._grant_owner(request, f"{scope}/filebuckets/{bucket}/files/{record['_id']}")
        return {k: record[k] for k in ("_id", "_created", "_modified")}

    def _require_record(self, request: _Request, scope: str, kind: str, bucket: str,
                        id: str) -> dict[str, Any]:
        records = self._bucket(request, scope, kind, bucket)
        record = records.get(id)
        if record is None:
            code = "FILE_NOT_FOUND" if kind == "filebuckets" else "OBJECT_NOT_FOUND"
            raise self._error(404, code, request.method, request.path)
        return record

    def _bucket_record(self, request: _Request, scope: str, kind: str, bucket: str,
                       id: str) -> dict[str, Any] | None:
        record = self._require_record(request, scope, kind, bucket, id)
        if request.method == "GET":
            return dict(record)
        protected = _FILE_PROTECTED if kind == "filebuckets" else frozenset()
        if request.method in ("PATCH", "PUT"):
            return self._update_record(request, record, protected)
        if request.method == "DELETE":
            if kind == "filebuckets" and not record.get("trashed"):
                raise self._error(409, "FILE_NOT_IN_TRASH", request.method, request.path)
            del self._buckets[(scope, kind, bucket)][id]
            self._bodies.pop((scope, bucket, id), None)
            self._drop_acls(f"{scope}/{kind}/{bucket}/{'files' if kind == 'filebuckets' else 'objects'}/{id}")
            return None
        raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

    def _drop_bucket(self, request: _Request, scope: str, kind: str, bucket: str) -> None:
        self._bucket(request, scope, kind, bucket)
        del self._buckets[(scope, kind, bucket)]
        if kind == "filebuckets":
            for key in [k for k in self._bodies if k[:2] == (scope, bucket)]:
                del self._bodies[key]
        self._drop_acls(f"{scope}/{kind}/{bucket}")
        return None

    def _query(self, request: _Request, scope: str, kind: str, bucket: str) -> dict[str, Any]:
        if not self._scope_exists(scope):
            raise self._error(404, "SCOPE_NOT_FOUND", request.method, request.path)
        records = list(self._buckets.get((scope, kind, bucket), {}).values())
        bucket_query = request.body.get("bucketQuery") or {}
        clause = bucket_query.get("clause") or {"type": "all"}
        try:
            matched = [r for r in records if _matches(clause, r)]
        except ValueError as e:
            raise self._error(
                400, "QUERY_NOT_SUPPORTED", request.method, request.path, message=str(e)
            ) from e
        if kind == "filebuckets":
            matched = [r for r in matched if not r.get("trashed")]

        order_by = bucket_query.get("orderBy")
        if order_by:
            present = [r for r in matched if r.get(order_by) is not None]
            missing = [r for r in matched if r.get(order_by) is None]
            try:
                present.sort(
                    key=lambda r: r[order_by],
                    reverse=bool(bucket_query.get("descending")),
                )
            except TypeError:
                present.sort(key=lambda r: str(r[order_by]), reverse=bool(bucket_query.get("descending")))
            matched = present + missing
        else:
            matched.sort(key=lambda r: r["_created"])

        limit = request.body.get("bestEffortLimit") or MAX_LIMIT
        if not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
            raise self._error(400, "INVALID_LIMIT", request.method, request.path)
        offset = int(request.body.get("paginationKey") or 0)
        page = matched[offset:offset + limit]
        result: dict[str, Any] = {"results": [dict(r) for r in page]}
        if offset + limit < len(matched):
            result["nextPaginationKey"] = str(offset + limit)
        return result

    # ------------------------------------------------------------------
    # File bodies, trash, publication
    # ------------------------------------------------------------------

    def _body(self, request: _Request, scope: str, bucket: str, id: str) -> bytes | dict[str, Any]:
        record = self._require_record(request, scope, "filebuckets", bucket, id)
        if request.method == "PUT":
            if record.get("trashed"):
                raise self._error(409, "FILE_IN_TRASH", request.method, request.path)
            content = request.content or b""
            self._bodies[(scope, bucket, id)] = content
            record.update({
                "fileSize": len(content),
                "hasBody": True,
                "mimeType": request.content_type or record.get("mimeType") or OCTET_STREAM,
                "_modified": self._now(),
            })
            return {"_modified": record["_modified"], "fileSize": len(content)}
        if request.method == "GET":
            body = self._bodies.get((scope, bucket, id))
            if body is None:
                raise self._error(404, "FILE_BODY_NOT_FOUND", request.method, request.path)
            return body
        raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)

    def _trash(self, request: _Request, scope: str, bucket: str, id: str) -> dict[str, Any]:
        record = self._require_record(request, scope, "filebuckets", bucket, id)
        trash = request.method == "POST"
        if request.method not in ("POST", "DELETE"):
            raise self._error(405, "METHOD_NOT_ALLOWED", request.method, request.path)
        if bool(record.get("trashed")) == trash:
            code = "FILE_ALREADY_IN_TRASH" if trash else "FILE_NOT_IN_TRASH"
            raise self._error(409, code, request.method, request.path)
        record["trashed"] = trash
        record["_modified"] = self._now()
        return {"_modified": record["_modified"]}

    def _publish(self, request: _Request, scope: str, bucket: str, id: str) -> dict[str, Any]:
        record = self._require_record(request, scope, "filebuckets", bucket, id)
        if not record.get("hasBody"):
            raise self._error(404, "FILE_BODY_NOT_FOUND", request.method, request.path)
        url = f"https://memory.kii.invalid/published/{secrets.token_urlsafe(12)}"
        self._published[url] = (scope, bucket, id)
        return {"url": url, "expiresAt": request.body.get("expiresAt")}


@dataclass
class _Request:
    method: str
    path: str
    body: dict[str, Any]
    content: bytes | None
    content_type: str | None
    token: str | None
    params: dict[str, str]


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None or isinstance(left, bool) != isinstance(right, bool):
        return False
    try:
        return op(left, right)
    except TypeError:
        return False


def _matches(clause: dict[str, Any], record: dict[str, Any]) -> bool:
    """Evaluate a wire clause against a record."""
    kind = clause.get("type")
    if kind == "all":
        return True
    if kind == "and":
        return all(_matches(c, record) for c in clause["clauses"])
    if kind == "or":
        return any(_matches(c, record) for c in clause["clauses"])
    if kind == "not":
        return not _matches(clause["clause"], record)

    value = record.get(clause.get("field"))
    if kind == "eq":
        return clause["field"] in record and value == clause["value"]
    if kind == "in":
        return clause["field"] in record and value in clause["values"]
    if kind == "prefix":
        return isinstance(value, str) and value.startswith(clause["prefix"])
    if kind == "range":
        if "lowerLimit" in clause:
            bound = clause["lowerLimit"]
            if clause.get("lowerIncluded"):
                return _compare(value, bound, lambda a, b: a >= b)
            return _compare(value, bound, lambda a, b: a > b)
        bound = clause["upperLimit"]
        if clause.get("upperIncluded"):
            return _compare(value, bound, lambda a, b: a <= b)
        return _compare(value, bound, lambda a, b: a < b)
    raise ValueError(f"Unsupported clause type: {kind}")
