"""
File buckets.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .bucket import BaseBucket
from .files import KiiFile
from .query import Query

logger = logging.getLogger(__name__)


class FileBucket(BaseBucket[KiiFile]):
    """Bucket of files.

    Queries only see files that are not in the trash.

    Example:
        >>> photos = client.file_bucket("photos")
        >>> photo = photos.file_with_local_path("/tmp/cat.png")
        >>> photo.save_file()
    """

    KIND = "filebuckets"

    def file(self) -> KiiFile:
        """New LOCAL file in this bucket."""
        return KiiFile(self._client, self._name, self._scope)

    def file_with_local_path(self, path: str | Path) -> KiiFile:
        """New LOCAL file whose body will be read from path."""
        return KiiFile(self._client, self._name, self._scope, local_path=path)

    def _bind(self, query: Query) -> Query:
        return query.for_container(self._name)

    def _hydrate_row(self, data: dict[str, Any]) -> KiiFile:
        return KiiFile._from_wire(
            self._client, data, bucket_name=self._name, scope=self._scope
        )
