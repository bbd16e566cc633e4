"""
Key/value objects stored in buckets.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .entity import Entity, parse_uri
from .errors import ValidationError
from .scope import Scope, validate_bucket_name

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)


class KiiObject(Entity):
    """Object in a bucket.

    Objects keep their bucket name and scope, never the Bucket handle that
    created them.

    Example:
        >>> obj = client.bucket("tasks").object()
        >>> obj.set("title", "write docs")
        >>> obj.save()
    """

    TYPE_NAME = "object"

    def __init__(
        self,
        client: KiiClient,
        bucket_name: str,
        scope: Scope | None = None,
        uuid: str | None = None,
    ) -> None:
        super().__init__(client, uuid)
        self._bucket_name = validate_bucket_name(bucket_name)
        self._scope = scope or Scope.app()

    @property
    def bucket_name(self) -> str:
        return self._bucket_name

    @property
    def scope(self) -> Scope:
        return self._scope

    def _collection_path(self) -> str:
        return self._client.app_path(
            f"{self._scope.path}/buckets/{self._bucket_name}/objects"
        )

    def _resource_path(self) -> str:
        return f"{self._collection_path()}/{self._uuid}"

    def _uri_path(self) -> str:
        return f"{self._scope.uri_prefix}buckets/{self._bucket_name}/objects/{self._uuid}"

    @classmethod
    def from_uri(cls, client: KiiClient, uri: str) -> KiiObject:
        """Handle for the object named by uri, with no fields loaded.

        Raises:
            ValidationError: If uri does not name an object
        """
        scope, rest = Scope.split_uri_segments(parse_uri(uri))
        if len(rest) != 4 or rest[0] != "buckets" or rest[2] != "objects":
            raise ValidationError(f"Not an object URI: {uri}", field_name="uri")
        return cls(client, rest[1], scope, uuid=rest[3])

    def _describe_lines(self) -> list[str]:
        lines = super()._describe_lines()
        lines.insert(1, f"  bucket={self._bucket_name} scope={self._scope}")
        return lines
