"""
Access control lists for Kii entities and buckets.

This module handles ACL handles on the client:
- Subject parsing (UserID:X, GroupID:X, any authenticated user, anonymous)
- Permission values and their short aliases
- Local staging of grants and revokes, sent as one batch on save

Invariants:
    - add_entry and revoke_entry never touch the network
    - A pair staged as both grant and revoke is sent as a revoke only
    - A save either merges every staged change or none of them
    - Entries are only merged into the authoritative set after the backend
      accepts the batch

How to change safely:
    - New subject kinds must keep the "<Kind>:<id>" string form
    - New permissions are additive; keep existing aliases stable
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import PreconditionError, ValidationError
from .invocation import OnComplete

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)

ANY_AUTHENTICATED_USER = "ANY_AUTHENTICATED_USER"
ANONYMOUS_USER = "ANONYMOUS_USER"


class Permission(Enum):
    """Actions an ACL entry can grant."""

    READ = "READ_EXISTING_OBJECT"
    WRITE = "WRITE_EXISTING_OBJECT"
    QUERY = "QUERY_OBJECTS_IN_BUCKET"
    CREATE = "CREATE_OBJECTS_IN_BUCKET"
    DROP = "DROP_BUCKET_WITH_ALL_CONTENT"

    @classmethod
    def parse(cls, value: str | Permission) -> Permission:
        """Convert a wire value or short alias ("read", "write", ...)."""
        if isinstance(value, Permission):
            return value
        for permission in cls:
            if value == permission.value or value.lower() == permission.name.lower():
                return permission
        raise ValidationError(f"Invalid permission: {value}", field_name="permission")


class SubjectKind(Enum):
    """Subject namespaces."""

    USER = "UserID"
    GROUP = "GroupID"


@dataclass(frozen=True)
class Subject:
    """Who an ACL entry applies to.

    Subject kinds:
        - UserID:ID - Specific user
        - GroupID:ID - Members of a group
        - UserID:ANY_AUTHENTICATED_USER - Every logged-in user
        - UserID:ANONYMOUS_USER - Callers without a session

    Attributes:
        kind: Namespace of the identifier
        id: User or group uuid, or one of the two wildcard ids
    """

    kind: SubjectKind
    id: str

    @classmethod
    def user(cls, user: Any) -> Subject:
        """Subject for a user handle or user uuid."""
        return cls(SubjectKind.USER, _require_uuid(user, "user"))

    @classmethod
    def group(cls, group: Any) -> Subject:
        """Subject for a group handle or group uuid."""
        return cls(SubjectKind.GROUP, _require_uuid(group, "group"))

    @classmethod
    def any_authenticated_user(cls) -> Subject:
        return cls(SubjectKind.USER, ANY_AUTHENTICATED_USER)

    @classmethod
    def anonymous_user(cls) -> Subject:
        return cls(SubjectKind.USER, ANONYMOUS_USER)

    @classmethod
    def parse(cls, subject_str: str) -> Subject:
        """Parse a subject string.

        Args:
            subject_str: String like "UserID:abc" or "GroupID:xyz"

        Raises:
            ValidationError: If format is invalid
        """
        if ":" not in subject_str:
            raise ValidationError(f"Invalid subject format: {subject_str}", field_name="subject")

        kind_str, id_str = subject_str.split(":", 1)
        if not id_str:
            raise ValidationError(f"Invalid subject format: {subject_str}", field_name="subject")
        try:
            kind = SubjectKind(kind_str)
        except ValueError:
            raise ValidationError(
                f"Invalid subject type: {kind_str}", field_name="subject"
            ) from None
        return cls(kind=kind, id=id_str)

    @property
    def is_wildcard(self) -> bool:
        return self.kind == SubjectKind.USER and self.id in (ANY_AUTHENTICATED_USER, ANONYMOUS_USER)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def _require_uuid(handle: Any, kind: str) -> str:
    if isinstance(handle, str):
        if not handle:
            raise ValidationError(f"Empty {kind} id", field_name="subject")
        return handle
    uuid = getattr(handle, "uuid", None)
    if uuid is None:
        raise PreconditionError(
            f"The {kind} must be saved before it can appear in an ACL", operation="acl"
        )
    return uuid


@dataclass(frozen=True)
class AclEntry:
    """ACL entry granting a permission to a subject.

    Attributes:
        subject: Who gets access
        permission: What action is allowed
    """

    subject: Subject
    permission: Permission

    @classmethod
    def of(cls, subject: Subject | str, permission: Permission | str) -> AclEntry:
        """Build an entry from objects or their string forms."""
        if isinstance(subject, str):
            subject = Subject.parse(subject)
        return cls(subject=subject, permission=Permission.parse(permission))

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for transmission."""
        return {
            "subject": str(self.subject),
            "permission": self.permission.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AclEntry:
        """Create from dictionary."""
        return cls.of(data["subject"], data["permission"])

    def __str__(self) -> str:
        return f"{self.subject} {self.permission.value}"


class Acl:
    """ACL handle of one entity or bucket.

    Staged grants and revokes stay local until save(). The authoritative
    entries are what the backend last confirmed, through refresh() or a
    successful save().

    Example:
        >>> acl = obj.acl
        >>> acl.add_entry(Subject.user(bob), Permission.READ)
        >>> acl.revoke_entry(Subject.anonymous_user(), "read")
        >>> acl.save()
    """

    def __init__(
        self,
        client: KiiClient,
        path: str,
        guard: Callable[[], None] | None = None,
    ) -> None:
        """Initialize an ACL handle.

        Args:
            client: Client used for requests
            path: Resource path of the ACL
            guard: Called before every network operation (stale checks)
        """
        self._client = client
        self._path = path
        self._guard = guard
        self._entries: set[AclEntry] = set()
        self._grants: set[AclEntry] = set()
        self._revokes: set[AclEntry] = set()

    @property
    def path(self) -> str:
        return self._path

    @property
    def entries(self) -> frozenset[AclEntry]:
        """Entries confirmed by the backend."""
        return frozenset(self._entries)

    @property
    def pending_grants(self) -> frozenset[AclEntry]:
        return frozenset(self._grants)

    @property
    def pending_revokes(self) -> frozenset[AclEntry]:
        return frozenset(self._revokes)

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._grants or self._revokes)

    def add_entry(
        self,
        subject: AclEntry | Subject | str,
        permission: Permission | str | None = None,
    ) -> Acl:
        """Stage a grant. Returns self for chaining."""
        self._grants.add(self._coerce(subject, permission))
        return self

    def revoke_entry(
        self,
        subject: AclEntry | Subject | str,
        permission: Permission | str | None = None,
    ) -> Acl:
        """Stage a revoke. Returns self for chaining."""
        self._revokes.add(self._coerce(subject, permission))
        return self

    def discard_pending(self) -> None:
        """Drop every staged change."""
        self._grants.clear()
        self._revokes.clear()

    def delta(self) -> tuple[frozenset[AclEntry], frozenset[AclEntry]]:
        """Staged changes as (grants, revokes), with revokes winning conflicts."""
        revokes = frozenset(self._revokes)
        grants = frozenset(self._grants - self._revokes)
        return grants, revokes

    def contains(self, subject: Subject | str, permission: Permission | str) -> bool:
        """Whether the confirmed entries include this pair."""
        return self._coerce(subject, permission) in self._entries

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def asave(self) -> Acl:
        """Send staged grants and revokes as one batch.

        Raises:
            AclEntryRejectedError: If the backend rejected a named entry
            TransportError: On any other failure
        """
        if self._guard is not None:
            self._guard()
        grants, revokes = self.delta()
        if not grants and not revokes:
            return self

        payload = {
            "grant": [e.to_dict() for e in sorted(grants, key=str)],
            "revoke": [e.to_dict() for e in sorted(revokes, key=str)],
        }
        await self._client.request("POST", self._path, json=payload)

        self._entries = (self._entries | grants) - revokes
        self.discard_pending()
        logger.debug(f"ACL {self._path} saved: +{len(grants)} -{len(revokes)}")
        return self

    def save(self) -> Acl:
        """Blocking form of asave()."""
        return self._client.invoker.run(self.asave())

    def save_in_background(self, on_complete: OnComplete | None = None) -> Future[Acl]:
        """Callback form of asave()."""
        return self._client.invoker.submit(self.asave(), on_complete)

    async def arefresh(self) -> Acl:
        """Replace confirmed entries with the backend's list and drop staged changes."""
        if self._guard is not None:
            self._guard()
        response = await self._client.request("GET", self._path)
        entries: set[AclEntry] = set()
        for entry_dict in response.json().get("entries", []):
            try:
                entries.add(AclEntry.from_dict(entry_dict))
            except (ValidationError, KeyError) as e:
                logger.warning(f"Invalid ACL entry: {entry_dict}, error: {e}")
        self._entries = entries
        self.discard_pending()
        return self

    def refresh(self) -> Acl:
        """Blocking form of arefresh()."""
        return self._client.invoker.run(self.arefresh())

    def refresh_in_background(self, on_complete: OnComplete | None = None) -> Future[Acl]:
        """Callback form of arefresh()."""
        return self._client.invoker.submit(self.arefresh(), on_complete)

    def describe(self) -> str:
        lines = [f"ACL {self._path}"]
        lines += [f"  {e}" for e in sorted(self._entries, key=str)]
        lines += [f"  + {e}" for e in sorted(self._grants, key=str)]
        lines += [f"  - {e}" for e in sorted(self._revokes, key=str)]
        text = "\n".join(lines)
        logger.info(text)
        return text

    @staticmethod
    def _coerce(
        subject: AclEntry | Subject | str,
        permission: Permission | str | None,
    ) -> AclEntry:
        if isinstance(subject, AclEntry):
            return subject
        if permission is None:
            raise ValidationError("permission is required", field_name="permission")
        return AclEntry.of(subject, permission)
