"""
User groups.

A group has a name, an owner and a member list. Member additions and
removals are staged locally and applied by save(), the same way ACL
changes are staged until the ACL is saved.

Invariants:
    - Groups carry no custom fields; set() always returns False
    - A group is created with its name, its owner (the logged-in user) and
      every staged member in one request
    - Members are added and removed one request each; a failure keeps the
      changes that were not applied yet
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Iterable

from .acl import Subject
from .bucket import Bucket
from .entity import Entity, EntityState, parse_uri
from .errors import ValidationError
from .file_bucket import FileBucket
from .invocation import OnComplete
from .scope import Scope

if TYPE_CHECKING:
    from .client import KiiClient
    from .user import KiiUser

logger = logging.getLogger(__name__)


class KiiGroup(Entity):
    """Group of users.

    Example:
        >>> group = client.group_with_name("reviewers", members=[bob])
        >>> group.add_user(carol)
        >>> group.save()
    """

    TYPE_NAME = "group"
    EXTRA_RESERVED_KEYS = frozenset({"name", "owner"})
    ACCEPTS_CUSTOM_FIELDS = False

    def __init__(
        self,
        client: KiiClient,
        name: str | None = None,
        uuid: str | None = None,
        members: Iterable[Any] | None = None,
    ) -> None:
        super().__init__(client, uuid)
        self._members: set[str] = set()
        self._pending_adds: set[str] = set()
        self._pending_removes: set[str] = set()
        if name is not None:
            self._put("name", _validate_name(name))
        for member in members or ():
            self.add_user(member)

    @classmethod
    def from_uri(cls, client: KiiClient, uri: str) -> KiiGroup:
        """Handle for the group named by uri, with nothing loaded."""
        segments = parse_uri(uri)
        if len(segments) != 2 or segments[0] != "groups":
            raise ValidationError(f"Not a group URI: {uri}", field_name="uri")
        return cls(client, uuid=segments[1])

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @property
    def name(self) -> str | None:
        return self._fields.get("name")

    @property
    def owner_id(self) -> str | None:
        return self._fields.get("owner")

    @property
    def members(self) -> frozenset[str]:
        """Member uuids confirmed by the backend."""
        return frozenset(self._members)

    @property
    def pending_adds(self) -> frozenset[str]:
        return frozenset(self._pending_adds)

    @property
    def pending_removes(self) -> frozenset[str]:
        return frozenset(self._pending_removes)

    @property
    def state(self) -> EntityState:
        state = super().state
        if state == EntityState.SYNCED and (self._pending_adds or self._pending_removes):
            return EntityState.DIRTY
        return state

    def add_user(self, user: Any) -> KiiGroup:
        """Stage a member addition. Accepts a saved KiiUser or a user uuid."""
        self._ensure_not_stale()
        user_id = Subject.user(user).id
        if user_id in self._pending_removes:
            self._pending_removes.discard(user_id)
        else:
            self._pending_adds.add(user_id)
        return self

    def remove_user(self, user: Any) -> KiiGroup:
        """Stage a member removal. Accepts a saved KiiUser or a user uuid."""
        self._ensure_not_stale()
        user_id = Subject.user(user).id
        if user_id in self._pending_adds:
            self._pending_adds.discard(user_id)
        else:
            self._pending_removes.add(user_id)
        return self

    # ------------------------------------------------------------------
    # Entity hooks
    # ------------------------------------------------------------------

    def _collection_path(self) -> str:
        return self._client.app_path("/groups")

    def _resource_path(self) -> str:
        return self._client.app_path(f"/groups/{self._uuid}")

    def _uri_path(self) -> str:
        return f"groups/{self._uuid}"

    def _create_payload(self) -> dict[str, Any]:
        owner = self._client.current_user
        return {
            "name": self.name,
            "owner": owner.uuid if owner is not None else None,
            "members": sorted(self._pending_adds),
        }

    def _after_create(self) -> None:
        owner = self._client.current_user
        if owner is not None:
            self._fields["owner"] = owner.uuid
            self._members.add(owner.uuid)
        self._members |= self._pending_adds
        self._pending_adds.clear()
        self._pending_removes.clear()

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def bucket_with_name(self, name: str) -> Bucket:
        """Object bucket owned by this group."""
        return Bucket(self._client, name, Scope.group(self._uuid))

    def file_bucket_with_name(self, name: str) -> FileBucket:
        """File bucket owned by this group."""
        return FileBucket(self._client, name, Scope.group(self._uuid))

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def asave(self) -> KiiGroup:
        """Create the group, or apply the name change and member delta."""
        self._ensure_not_stale()
        if self._uuid is None and not self.name:
            raise ValidationError("Group name is required", field_name="name")
        created = self._uuid is None
        await super().asave()
        if created:
            return self

        for user_id in sorted(self._pending_adds):
            await self._client.request("PUT", f"{self._resource_path()}/members/{user_id}")
            self._pending_adds.discard(user_id)
            self._members.add(user_id)
        for user_id in sorted(self._pending_removes):
            await self._client.request("DELETE", f"{self._resource_path()}/members/{user_id}")
            self._pending_removes.discard(user_id)
            self._members.discard(user_id)
        return self

    async def arefresh(self) -> KiiGroup:
        """Reload name and owner and drop staged member changes."""
        await super().arefresh()
        self._pending_adds.clear()
        self._pending_removes.clear()
        return self

    async def achange_name(self, name: str) -> KiiGroup:
        """Rename the group on the backend."""
        self._ensure_remote("change_name")
        self._put("name", _validate_name(name))
        return await self.asave()

    async def aget_members(self) -> list[KiiUser]:
        """Members as user handles with no attributes loaded."""
        from .user import KiiUser

        self._ensure_remote("get_members")
        response = await self._client.request("GET", self._resource_path() + "/members")
        ids = [m["userID"] for m in response.json().get("members", [])]
        self._members = set(ids)
        return [KiiUser(self._client, uuid=user_id) for user_id in ids]

    def change_name(self, name: str) -> KiiGroup:
        return self._client.invoker.run(self.achange_name(name))

    def change_name_in_background(
        self, name: str, on_complete: OnComplete | None = None
    ) -> Future[KiiGroup]:
        return self._client.invoker.submit(self.achange_name(name), on_complete)

    def get_members(self) -> list[KiiUser]:
        return self._client.invoker.run(self.aget_members())

    def get_members_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[list[KiiUser]]:
        return self._client.invoker.submit(self.aget_members(), on_complete)

    def _describe_lines(self) -> list[str]:
        lines = super()._describe_lines()
        lines.append(f"  members={sorted(self._members)}")
        if self._pending_adds or self._pending_removes:
            lines.append(
                f"  pending +{sorted(self._pending_adds)} -{sorted(self._pending_removes)}"
            )
        return lines


def _validate_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Group name must be a non-empty string", field_name="name")
    return name
