"""
Bucket scopes.

A bucket lives either in the application scope or under one user or one
group. The scope decides the resource path prefix and the object URI
prefix of everything stored in the bucket.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .errors import PreconditionError, ValidationError

BUCKET_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{2,64}")


class ScopeKind(Enum):
    APP = "app"
    USER = "users"
    GROUP = "groups"


@dataclass(frozen=True)
class Scope:
    """Owner of a bucket.

    Attributes:
        kind: Application, user or group scope
        owner_id: User or group uuid, None for the application scope
    """

    kind: ScopeKind = ScopeKind.APP
    owner_id: str | None = None

    @classmethod
    def app(cls) -> Scope:
        return cls()

    @classmethod
    def user(cls, user_id: str | None) -> Scope:
        return cls(ScopeKind.USER, _require_owner(user_id, "user"))

    @classmethod
    def group(cls, group_id: str | None) -> Scope:
        return cls(ScopeKind.GROUP, _require_owner(group_id, "group"))

    @property
    def path(self) -> str:
        """Resource path prefix, empty for the application scope."""
        if self.kind == ScopeKind.APP:
            return ""
        return f"/{self.kind.value}/{self.owner_id}"

    @property
    def uri_prefix(self) -> str:
        if self.kind == ScopeKind.APP:
            return ""
        return f"{self.kind.value}/{self.owner_id}/"

    @classmethod
    def split_uri_segments(cls, segments: list[str]) -> tuple[Scope, list[str]]:
        """Separate the scope part of URI segments from the rest."""
        if len(segments) > 2 and segments[0] in ("users", "groups"):
            kind = ScopeKind(segments[0])
            return cls(kind, segments[1]), segments[2:]
        return cls.app(), segments

    def __str__(self) -> str:
        if self.kind == ScopeKind.APP:
            return "app"
        return f"{self.kind.value}:{self.owner_id}"


def validate_bucket_name(name: str) -> str:
    """Raise ValidationError unless name is 2-64 chars of [A-Za-z0-9_-]."""
    if not isinstance(name, str) or not BUCKET_NAME_PATTERN.fullmatch(name):
        raise ValidationError(f"Invalid bucket name: {name!r}", field_name="bucket")
    return name


def _require_owner(owner_id: str | None, kind: str) -> str:
    if not owner_id:
        raise PreconditionError(
            f"The {kind} must be saved before it can own buckets", operation="bucket"
        )
    return owner_id
