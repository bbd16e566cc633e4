"""
Entity base for the Kii SDK.

This module provides what users, groups, bucket objects and files share:
- Identity: optional uuid and the derived object URI
- Field store: custom key/value pairs with dirty-key and removal tracking
- Sync state machine: create, partial update, refresh, delete
- Hydration of backend JSON into handles

States:
    LOCAL   - no uuid, exists only in this process
    SYNCED  - uuid present, nothing changed since the last sync
    DIRTY   - uuid present, local changes not yet saved
    DELETED - deleted on the backend; fields stay readable, nothing else works

Invariants:
    - Reserved keys (created, modified, type, uuid, anything starting with
      "_") are never accepted by set()
    - Values are checked for JSON compatibility when set, not when saved
    - A failed save keeps local changes and dirty keys
    - Save sends only dirty keys, the full body on create, or the full body
      as a replacement when keys were removed
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from .acl import Acl
from .errors import (
    FieldTypeError,
    PreconditionError,
    StaleEntityError,
    ValidationError,
)
from .invocation import OnComplete

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)

URI_SCHEME = "kiicloud://"

RESERVED_KEYS = frozenset({"created", "modified", "type", "uuid"})

# Wire keys carrying identity and timestamps (milliseconds since epoch)
ID_KEY = "_id"
CREATED_KEY = "_created"
MODIFIED_KEY = "_modified"

E = TypeVar("E", bound="Entity")


class EntityState(Enum):
    """Synchronization state of an entity handle."""

    LOCAL = "local"
    SYNCED = "synced"
    DIRTY = "dirty"
    DELETED = "deleted"


def ms_to_datetime(value: Any) -> datetime | None:
    """Convert a millisecond timestamp to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def parse_uri(uri: str) -> list[str]:
    """Split an object URI into its path segments.

    Raises:
        ValidationError: If the scheme is wrong or a segment is empty
    """
    if not isinstance(uri, str) or not uri.startswith(URI_SCHEME):
        raise ValidationError(f"Invalid object URI: {uri!r}", field_name="uri")
    segments = uri[len(URI_SCHEME):].split("/")
    if not segments or any(not s for s in segments):
        raise ValidationError(f"Invalid object URI: {uri!r}", field_name="uri")
    return segments


def check_json_value(key: str, value: Any) -> None:
    """Raise FieldTypeError unless value can be sent as JSON."""
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError):
        raise FieldTypeError(key, value) from None


class Entity:
    """Base class of every syncable handle.

    Subclasses provide the resource paths and may extend the reserved keys
    and the hydration of typed attributes.
    """

    TYPE_NAME: ClassVar[str] = "entity"
    EXTRA_RESERVED_KEYS: ClassVar[frozenset[str]] = frozenset()
    ACCEPTS_CUSTOM_FIELDS: ClassVar[bool] = True

    def __init__(self, client: KiiClient, uuid: str | None = None) -> None:
        self._client = client
        self._uuid = uuid
        self._fields: dict[str, Any] = {}
        self._dirty: set[str] = set()
        self._removed: set[str] = set()
        self._created: datetime | None = None
        self._modified: datetime | None = None
        self._deleted = False
        self._acl: Acl | None = None

    # ------------------------------------------------------------------
    # Identity and state
    # ------------------------------------------------------------------

    @property
    def client(self) -> KiiClient:
        return self._client

    @property
    def uuid(self) -> str | None:
        """Backend id, None until the entity is first saved."""
        return self._uuid

    @property
    def created(self) -> datetime | None:
        return self._created

    @property
    def modified(self) -> datetime | None:
        return self._modified

    @property
    def state(self) -> EntityState:
        if self._deleted:
            return EntityState.DELETED
        if self._uuid is None:
            return EntityState.LOCAL
        if self._dirty or self._removed:
            return EntityState.DIRTY
        return EntityState.SYNCED

    @property
    def stale(self) -> bool:
        """True once the entity has been deleted."""
        return self._deleted

    @property
    def dirty_keys(self) -> frozenset[str]:
        """Keys changed or removed since the last sync."""
        return frozenset(self._dirty | self._removed)

    @property
    def object_uri(self) -> str:
        """URI referencing this entity.

        Raises:
            PreconditionError: If the entity has no uuid yet
        """
        if self._uuid is None:
            raise PreconditionError(
                f"{self.TYPE_NAME} has no uuid; save it before requesting its URI",
                operation="object_uri",
            )
        return URI_SCHEME + self._uri_path()

    @property
    def acl(self) -> Acl:
        """ACL handle of this entity.

        Raises:
            PreconditionError: If the entity has no uuid yet
            StaleEntityError: If the entity was deleted
        """
        self._ensure_remote("acl")
        if self._acl is None:
            self._acl = Acl(
                self._client,
                self._resource_path() + "/acl",
                guard=self._ensure_not_stale,
            )
        return self._acl

    # ------------------------------------------------------------------
    # Field store
    # ------------------------------------------------------------------

    @classmethod
    def is_reserved_key(cls, key: str) -> bool:
        return key in RESERVED_KEYS or key.startswith("_") or key in cls.EXTRA_RESERVED_KEYS

    def set(self, key: str, value: Any) -> bool:
        """Set a custom field.

        Returns:
            True if the field was set; False for reserved or invalid keys,
            in which case nothing changes

        Raises:
            FieldTypeError: If value cannot be encoded as JSON
            StaleEntityError: If the entity was deleted
        """
        self._ensure_not_stale()
        if not self.ACCEPTS_CUSTOM_FIELDS:
            return False
        if not isinstance(key, str) or not key or self.is_reserved_key(key):
            return False
        check_json_value(key, value)
        self._put(key, value)
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Value of a field, default when absent."""
        return self._fields.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._fields

    def remove(self, key: str) -> bool:
        """Remove a custom field; it is absent on the backend after the next save.

        Returns:
            False for reserved keys and keys that are not set
        """
        self._ensure_not_stale()
        if not isinstance(key, str) or self.is_reserved_key(key) or key not in self._fields:
            return False
        del self._fields[key]
        self._dirty.discard(key)
        if self._uuid is not None:
            self._removed.add(key)
        return True

    def keys(self) -> list[str]:
        return list(self._fields)

    def to_dict(self) -> dict[str, Any]:
        """Copy of the field values."""
        return dict(self._fields)

    def _put(self, key: str, value: Any) -> None:
        """Set a field without reserved-key checks and mark it dirty."""
        self._fields[key] = value
        self._dirty.add(key)
        self._removed.discard(key)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _ensure_not_stale(self) -> None:
        if self._deleted:
            raise StaleEntityError(
                f"{self.TYPE_NAME} {self._uuid} has been deleted", uuid=self._uuid
            )

    def _ensure_remote(self, operation: str) -> None:
        self._ensure_not_stale()
        if self._uuid is None:
            raise PreconditionError(
                f"Cannot {operation} a {self.TYPE_NAME} that was never saved",
                operation=operation,
            )

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def _collection_path(self) -> str:
        """Path that creates new entities of this kind."""
        raise NotImplementedError

    def _resource_path(self) -> str:
        """Path of this entity; only valid once uuid is set."""
        raise NotImplementedError

    def _uri_path(self) -> str:
        raise NotImplementedError

    def _create_payload(self) -> dict[str, Any]:
        return dict(self._fields)

    def _after_create(self) -> None:
        """Hook run after a successful create."""

    def _hydrate(self, data: dict[str, Any]) -> None:
        """Load identity, timestamps and fields from backend JSON."""
        if data.get(ID_KEY) is not None:
            self._uuid = data[ID_KEY]
        self._apply_timestamps(data)
        self._fields = {k: v for k, v in data.items() if not k.startswith("_")}

    def _apply_timestamps(self, data: dict[str, Any]) -> None:
        if CREATED_KEY in data:
            self._created = ms_to_datetime(data[CREATED_KEY])
        if MODIFIED_KEY in data:
            self._modified = ms_to_datetime(data[MODIFIED_KEY])

    @classmethod
    def _from_wire(cls: type[E], client: KiiClient, data: dict[str, Any], **kwargs: Any) -> E:
        """Hydrate a SYNCED handle from backend JSON."""
        entity = cls(client, **kwargs)
        entity._hydrate(data)
        entity._dirty.clear()
        entity._removed.clear()
        return entity

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def asave(self: E) -> E:
        """Create or update the entity on the backend.

        LOCAL entities are created with their full body. DIRTY entities send
        only changed keys, or their full body when keys were removed.
        SYNCED entities send nothing.
        """
        self._ensure_not_stale()
        if self._uuid is None:
            await self._create()
        elif self._dirty or self._removed:
            await self._update()
        return self

    async def _create(self) -> None:
        sent = set(self._dirty)
        response = await self._client.request(
            "POST", self._collection_path(), json=self._create_payload()
        )
        data = response.json()
        self._uuid = data.get(ID_KEY)
        if self._uuid is None:
            raise ValidationError(f"Create response for {self.TYPE_NAME} carried no id")
        self._apply_timestamps(data)
        self._dirty -= sent
        self._removed.clear()
        self._after_create()
        logger.debug(f"Created {self.TYPE_NAME} {self._uuid}")

    async def _update(self) -> None:
        sent = set(self._dirty)
        removed = set(self._removed)
        if removed:
            # Partial updates cannot drop keys, so replace the whole body
            response = await self._client.request(
                "PUT", self._resource_path(), json=dict(self._fields)
            )
        else:
            patch = {k: self._fields[k] for k in sent if k in self._fields}
            response = await self._client.request("PATCH", self._resource_path(), json=patch)
        self._apply_timestamps(response.json())
        self._dirty -= sent
        self._removed -= removed
        logger.debug(f"Updated {self.TYPE_NAME} {self._uuid}: {sorted(sent | removed)}")

    async def arefresh(self: E) -> E:
        """Overwrite local fields with the backend copy and clear dirty keys."""
        self._ensure_remote("refresh")
        response = await self._client.request("GET", self._resource_path())
        self._hydrate(response.json())
        self._dirty.clear()
        self._removed.clear()
        return self

    async def adelete(self) -> None:
        """Delete the entity on the backend and mark this handle stale."""
        self._ensure_remote("delete")
        await self._client.request("DELETE", self._resource_path())
        self._deleted = True
        logger.debug(f"Deleted {self.TYPE_NAME} {self._uuid}")

    def save(self: E) -> E:
        """Blocking form of asave()."""
        return self._client.invoker.run(self.asave())

    def save_in_background(self: E, on_complete: OnComplete | None = None) -> Future[E]:
        """Callback form of asave()."""
        return self._client.invoker.submit(self.asave(), on_complete)

    def refresh(self: E) -> E:
        """Blocking form of arefresh()."""
        return self._client.invoker.run(self.arefresh())

    def refresh_in_background(self: E, on_complete: OnComplete | None = None) -> Future[E]:
        """Callback form of arefresh()."""
        return self._client.invoker.submit(self.arefresh(), on_complete)

    def delete(self) -> None:
        """Blocking form of adelete()."""
        self._client.invoker.run(self.adelete())

    def delete_in_background(self, on_complete: OnComplete | None = None) -> Future[None]:
        """Callback form of adelete()."""
        return self._client.invoker.submit(self.adelete(), on_complete)

    # ------------------------------------------------------------------
    # Debugging
    # ------------------------------------------------------------------

    def _describe_lines(self) -> list[str]:
        return [
            f"{self.TYPE_NAME} uuid={self._uuid} state={self.state.value}",
            f"  created={self._created} modified={self._modified}",
        ] + [
            f"  {key}={value!r}{' *' if key in self._dirty else ''}"
            for key, value in sorted(self._fields.items())
        ]

    def describe(self) -> str:
        """Readable dump of the entity, also written to the log."""
        text = "\n".join(self._describe_lines())
        logger.info(text)
        return text

    def __repr__(self) -> str:
        return f"<{type(self).__name__} uuid={self._uuid} state={self.state.value}>"
