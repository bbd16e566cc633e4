"""
Files stored in file buckets.

A KiiFile combines metadata (title, optional, server-reported size and
mime type) with a binary body transferred separately. On top of the
entity state machine it adds a trash lifecycle:

    ACTIVE <-> TRASHED -> SHREDDED

Invariants:
    - Trash transitions are checked locally and never reach the backend
      from the wrong state
    - Shredding deletes metadata and body; the handle becomes stale
    - Body transfers need a uuid; save_file creates the metadata first
    - local_path is never sent to the backend
    - optional is at most 512 bytes of UTF-8

How to change safely:
    - Keep the body endpoints separate from the metadata endpoints
    - A failed upload after a successful create must stay a
      PartialFailureError so callers retry the body only
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from concurrent.futures import Future
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .entity import Entity, datetime_to_ms, parse_uri
from .errors import (
    InvalidStateError,
    NoBodyError,
    PartialFailureError,
    PreconditionError,
    TransportError,
    ValidationError,
)
from .invocation import OnComplete, OnProgress
from .scope import Scope, validate_bucket_name
from .transport.base import OCTET_STREAM

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)

OPTIONAL_MAX_BYTES = 512

NO_BODY_ERROR_CODE = "FILE_BODY_NOT_FOUND"


class TrashState(Enum):
    """Position of a file in the trash lifecycle."""

    ACTIVE = "active"
    TRASHED = "trashed"
    SHREDDED = "shredded"


class KiiFile(Entity):
    """File in a file bucket.

    Example:
        >>> f = client.file_bucket("photos").file_with_local_path("cat.png")
        >>> f.title = "Cat"
        >>> f.save_file(on_progress=lambda p: print(f"{p:.0%}"))
        >>> url = f.publish()
    """

    TYPE_NAME = "file"
    EXTRA_RESERVED_KEYS = frozenset({
        "title", "optional", "mimeType", "fileSize", "hasBody", "trashed",
    })
    ACCEPTS_CUSTOM_FIELDS = False

    def __init__(
        self,
        client: KiiClient,
        bucket_name: str,
        scope: Scope | None = None,
        uuid: str | None = None,
        local_path: str | Path | None = None,
    ) -> None:
        super().__init__(client, uuid)
        self._bucket_name = validate_bucket_name(bucket_name)
        self._scope = scope or Scope.app()
        self._local_path = Path(local_path) if local_path is not None else None
        self._shredded = False

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @property
    def bucket_name(self) -> str:
        return self._bucket_name

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def local_path(self) -> Path | None:
        """Upload source and download target. Never sent to the backend."""
        return self._local_path

    @local_path.setter
    def local_path(self, value: str | Path | None) -> None:
        self._local_path = Path(value) if value is not None else None

    @property
    def title(self) -> str | None:
        return self._fields.get("title")

    @title.setter
    def title(self, value: str | None) -> None:
        self._ensure_not_stale()
        if value is not None and not isinstance(value, str):
            raise ValidationError("title must be a string", field_name="title")
        self._put("title", value)

    @property
    def optional(self) -> str | None:
        """Free-form metadata string, at most 512 bytes of UTF-8."""
        return self._fields.get("optional")

    @optional.setter
    def optional(self, value: str | None) -> None:
        self._ensure_not_stale()
        if value is not None:
            if not isinstance(value, str):
                raise ValidationError("optional must be a string", field_name="optional")
            if len(value.encode("utf-8")) > OPTIONAL_MAX_BYTES:
                raise ValidationError(
                    f"optional exceeds {OPTIONAL_MAX_BYTES} bytes", field_name="optional"
                )
        self._put("optional", value)

    @property
    def mime_type(self) -> str | None:
        return self._fields.get("mimeType")

    @property
    def file_size(self) -> int | None:
        return self._fields.get("fileSize")

    @property
    def has_body(self) -> bool:
        return bool(self._fields.get("hasBody"))

    @property
    def trash_state(self) -> TrashState:
        if self._shredded:
            return TrashState.SHREDDED
        if self._fields.get("trashed"):
            return TrashState.TRASHED
        return TrashState.ACTIVE

    @property
    def trashed(self) -> bool:
        return self.trash_state == TrashState.TRASHED

    # ------------------------------------------------------------------
    # Entity hooks
    # ------------------------------------------------------------------

    def _collection_path(self) -> str:
        return self._client.app_path(
            f"{self._scope.path}/filebuckets/{self._bucket_name}/files"
        )

    def _resource_path(self) -> str:
        return f"{self._collection_path()}/{self._uuid}"

    def _uri_path(self) -> str:
        return f"{self._scope.uri_prefix}filebuckets/{self._bucket_name}/files/{self._uuid}"

    def _guess_mime_type(self) -> str:
        if self._local_path is not None:
            guessed, _ = mimetypes.guess_type(self._local_path.name)
            if guessed:
                return guessed
        return self.mime_type or OCTET_STREAM

    def _create_payload(self) -> dict[str, Any]:
        payload = {k: v for k, v in self._fields.items() if k in ("title", "optional")}
        payload["mimeType"] = self._guess_mime_type()
        return payload

    def _after_create(self) -> None:
        self._fields.setdefault("mimeType", self._guess_mime_type())
        self._fields.setdefault("hasBody", False)
        self._fields.setdefault("trashed", False)

    @classmethod
    def from_uri(cls, client: KiiClient, uri: str) -> KiiFile:
        """Handle for the file named by uri, with no metadata loaded.

        Raises:
            ValidationError: If uri does not name a file
        """
        scope, rest = Scope.split_uri_segments(parse_uri(uri))
        if len(rest) != 4 or rest[0] != "filebuckets" or rest[2] != "files":
            raise ValidationError(f"Not a file URI: {uri}", field_name="uri")
        return cls(client, rest[1], scope, uuid=rest[3])

    def _require_trash_state(self, required: TrashState, operation: str) -> None:
        current = self.trash_state
        if current != required:
            raise InvalidStateError(
                f"Cannot {operation} a file that is {current.value}",
                current=current.value,
                required=required.value,
            )

    # ------------------------------------------------------------------
    # Body transfer
    # ------------------------------------------------------------------

    async def asave_metadata(self) -> KiiFile:
        """Create or update the metadata only."""
        return await self.asave()

    async def asave_body(self, on_progress: OnProgress | None = None) -> KiiFile:
        """Upload the contents of local_path as the file body.

        Raises:
            PreconditionError: If the file has no uuid, or local_path is unset
                or missing on disk
            StaleEntityError: If the file was shredded
        """
        self._ensure_remote("save_body")
        if self._local_path is None:
            raise PreconditionError("File has no local_path to upload", operation="save_body")

        try:
            content = await asyncio.to_thread(self._local_path.read_bytes)
        except FileNotFoundError as e:
            raise PreconditionError(
                f"Local file {self._local_path} does not exist", operation="save_body"
            ) from e
        content_type = self._guess_mime_type()
        response = await self._client.request(
            "PUT",
            self._resource_path() + "/body",
            content=content,
            content_type=content_type,
            progress=self._client.invoker.progress(on_progress),
        )
        self._apply_timestamps(response.json())
        self._fields.update({
            "fileSize": len(content),
            "hasBody": True,
            "mimeType": content_type,
        })
        logger.debug(f"Uploaded {len(content)} bytes to file {self._uuid}")
        return self

    async def asave_file(self, on_progress: OnProgress | None = None) -> KiiFile:
        """Save metadata, creating the file if needed, then upload the body.

        Raises:
            PreconditionError: If local_path is unset or not a regular file;
                nothing is sent in that case
            PartialFailureError: If the file was created but the upload failed
        """
        self._ensure_not_stale()
        if self._local_path is None:
            raise PreconditionError("File has no local_path to upload", operation="save_file")
        if not await asyncio.to_thread(self._local_path.is_file):
            raise PreconditionError(
                f"Local file {self._local_path} does not exist", operation="save_file"
            )

        created = self._uuid is None
        await self.asave()
        try:
            await self.asave_body(on_progress)
        except (TransportError, PreconditionError, OSError) as e:
            if not created:
                raise
            logger.warning(f"File {self._uuid} created but body upload failed: {e}")
            raise PartialFailureError(
                f"File {self._uuid} was created but its body upload failed",
                entity=self,
                cause=e,
            ) from e
        return self

    async def aget_body(
        self,
        to_path: str | Path,
        on_progress: OnProgress | None = None,
    ) -> Path:
        """Download the body into to_path and make it the local_path.

        Returns:
            The path written
        """
        self._ensure_remote("get_body")
        destination = Path(to_path)
        await self._client.download(
            self._resource_path() + "/body",
            destination,
            progress=self._client.invoker.progress(on_progress),
        )
        self._local_path = destination
        return destination

    # ------------------------------------------------------------------
    # Trash lifecycle
    # ------------------------------------------------------------------

    async def amove_to_trash(self) -> KiiFile:
        self._ensure_remote("move_to_trash")
        self._require_trash_state(TrashState.ACTIVE, "move to trash")
        response = await self._client.request("POST", self._resource_path() + "/trash")
        self._apply_timestamps(response.json())
        self._fields["trashed"] = True
        return self

    async def arestore_from_trash(self) -> KiiFile:
        self._ensure_remote("restore_from_trash")
        self._require_trash_state(TrashState.TRASHED, "restore from trash")
        response = await self._client.request("DELETE", self._resource_path() + "/trash")
        self._apply_timestamps(response.json())
        self._fields["trashed"] = False
        return self

    async def ashred(self) -> None:
        """Delete metadata and body for good. The file must be in the trash."""
        self._ensure_remote("shred")
        self._require_trash_state(TrashState.TRASHED, "shred")
        await self._client.request("DELETE", self._resource_path())
        self._shredded = True
        self._deleted = True
        logger.debug(f"Shredded file {self._uuid}")

    async def adelete(self) -> None:
        """Same as ashred()."""
        await self.ashred()

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    async def apublish(self, expires_at: datetime | None = None) -> str:
        """Publish the body and return its public URL.

        Args:
            expires_at: Expiry of the URL, None for a URL that never expires

        Raises:
            InvalidStateError: If the file is not ACTIVE
            NoBodyError: If no body was ever uploaded
        """
        self._ensure_remote("publish")
        self._require_trash_state(TrashState.ACTIVE, "publish")
        if self._fields.get("hasBody") is False:
            raise NoBodyError(f"File {self._uuid} has no body to publish", uuid=self._uuid)

        payload = {"expiresAt": datetime_to_ms(expires_at)} if expires_at is not None else {}
        try:
            response = await self._client.request(
                "POST", self._resource_path() + "/publish", json=payload
            )
        except TransportError as e:
            if e.status == 404 and isinstance(e.body, dict) and e.body.get("errorCode") == NO_BODY_ERROR_CODE:
                raise NoBodyError(
                    f"File {self._uuid} has no body to publish", uuid=self._uuid
                ) from e
            raise
        return response.json()["url"]

    # ------------------------------------------------------------------
    # Blocking and callback forms
    # ------------------------------------------------------------------

    def save_metadata(self) -> KiiFile:
        return self._client.invoker.run(self.asave_metadata())

    def save_metadata_in_background(self, on_complete: OnComplete | None = None) -> Future[KiiFile]:
        return self._client.invoker.submit(self.asave_metadata(), on_complete)

    def save_body(self, on_progress: OnProgress | None = None) -> KiiFile:
        return self._client.invoker.run(self.asave_body(on_progress))

    def save_body_in_background(
        self,
        on_complete: OnComplete | None = None,
        on_progress: OnProgress | None = None,
    ) -> Future[KiiFile]:
        return self._client.invoker.submit(self.asave_body(on_progress), on_complete)

    def save_file(self, on_progress: OnProgress | None = None) -> KiiFile:
        return self._client.invoker.run(self.asave_file(on_progress))

    def save_file_in_background(
        self,
        on_complete: OnComplete | None = None,
        on_progress: OnProgress | None = None,
    ) -> Future[KiiFile]:
        return self._client.invoker.submit(self.asave_file(on_progress), on_complete)

    def get_body(self, to_path: str | Path, on_progress: OnProgress | None = None) -> Path:
        return self._client.invoker.run(self.aget_body(to_path, on_progress))

    def get_body_in_background(
        self,
        to_path: str | Path,
        on_complete: OnComplete | None = None,
        on_progress: OnProgress | None = None,
    ) -> Future[Path]:
        return self._client.invoker.submit(self.aget_body(to_path, on_progress), on_complete)

    def move_to_trash(self) -> KiiFile:
        return self._client.invoker.run(self.amove_to_trash())

    def move_to_trash_in_background(self, on_complete: OnComplete | None = None) -> Future[KiiFile]:
        return self._client.invoker.submit(self.amove_to_trash(), on_complete)

    def restore_from_trash(self) -> KiiFile:
        return self._client.invoker.run(self.arestore_from_trash())

    def restore_from_trash_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[KiiFile]:
        return self._client.invoker.submit(self.arestore_from_trash(), on_complete)

    def shred(self) -> None:
        self._client.invoker.run(self.ashred())

    def shred_in_background(self, on_complete: OnComplete | None = None) -> Future[None]:
        return self._client.invoker.submit(self.ashred(), on_complete)

    def publish(self, expires_at: datetime | None = None) -> str:
        return self._client.invoker.run(self.apublish(expires_at))

    def publish_in_background(
        self,
        on_complete: OnComplete | None = None,
        expires_at: datetime | None = None,
    ) -> Future[str]:
        return self._client.invoker.submit(self.apublish(expires_at), on_complete)

    def _describe_lines(self) -> list[str]:
        lines = super()._describe_lines()
        lines.insert(1, (
            f"  bucket={self._bucket_name} scope={self._scope} "
            f"trash_state={self.trash_state.value} local_path={self._local_path}"
        ))
        return lines
