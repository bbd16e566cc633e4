"""
Object buckets.

A bucket is a named server-side collection in application, user or group
scope. It creates object handles, runs queries and drops itself with all
content. Only (scope, name) is kept; bucket handles are cheap to recreate.

Invariants:
    - Queries are validated before any round-trip
    - Every result row is hydrated into a SYNCED handle
    - A query is bound to exactly one target at execution time
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .acl import Acl
from .entity import Entity
from .invocation import OnComplete
from .objects import KiiObject
from .query import Query, QueryResult
from .scope import Scope, validate_bucket_name

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class BaseBucket(Generic[E]):
    """Shared behavior of object and file buckets."""

    KIND = "buckets"

    def __init__(self, client: KiiClient, name: str, scope: Scope | None = None) -> None:
        self._client = client
        self._name = validate_bucket_name(name)
        self._scope = scope or Scope.app()
        self._acl: Acl | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def path(self) -> str:
        return self._client.app_path(f"{self._scope.path}/{self.KIND}/{self._name}")

    @property
    def acl(self) -> Acl:
        """Bucket-level ACL (query, create and drop permissions)."""
        if self._acl is None:
            self._acl = Acl(self._client, self.path + "/acl")
        return self._acl

    def _bind(self, query: Query) -> Query:
        raise NotImplementedError

    def _hydrate_row(self, data: dict[str, Any]) -> E:
        raise NotImplementedError

    async def aexecute_query(
        self,
        query: Query | None = None,
        pagination_key: str | None = None,
    ) -> QueryResult[E]:
        """Run a query against this bucket.

        Args:
            query: Query to run, every record when None
            pagination_key: Continuation key from a previous page

        Raises:
            InvalidQueryError: If the query cannot be executed
        """
        bound = self._bind(query if query is not None else Query())
        bound.validate()
        response = await self._client.request(
            "POST", self.path + "/query", json=bound.to_dict(pagination_key)
        )
        data = response.json()
        results = [self._hydrate_row(row) for row in data.get("results", [])]
        logger.debug(f"Query on {self.path} returned {len(results)} rows")
        return QueryResult(results, data.get("nextPaginationKey"))

    def execute_query(
        self,
        query: Query | None = None,
        pagination_key: str | None = None,
    ) -> QueryResult[E]:
        """Blocking form of aexecute_query()."""
        return self._client.invoker.run(self.aexecute_query(query, pagination_key))

    def execute_query_in_background(
        self,
        query: Query | None = None,
        on_complete: OnComplete | None = None,
        pagination_key: str | None = None,
    ) -> Future[QueryResult[E]]:
        """Callback form of aexecute_query()."""
        return self._client.invoker.submit(
            self.aexecute_query(query, pagination_key), on_complete
        )

    async def adelete(self) -> None:
        """Drop the bucket with all its content."""
        await self._client.request("DELETE", self.path)
        logger.info(f"Dropped bucket {self._name} ({self._scope})")

    def delete(self) -> None:
        """Blocking form of adelete()."""
        self._client.invoker.run(self.adelete())

    def delete_in_background(self, on_complete: OnComplete | None = None) -> Future[None]:
        """Callback form of adelete()."""
        return self._client.invoker.submit(self.adelete(), on_complete)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._name} scope={self._scope}>"


class Bucket(BaseBucket[KiiObject]):
    """Bucket of key/value objects.

    Example:
        >>> bucket = client.bucket("tasks")
        >>> query = Query.with_clause(Clause.equals("status", "open"))
        >>> for task in bucket.execute_query(query):
        ...     print(task.get("title"))
    """

    KIND = "buckets"

    def object(self) -> KiiObject:
        """New LOCAL object in this bucket."""
        return KiiObject(self._client, self._name, self._scope)

    def _bind(self, query: Query) -> Query:
        return query.for_collection(self._name)

    def _hydrate_row(self, data: dict[str, Any]) -> KiiObject:
        return KiiObject._from_wire(
            self._client, data, bucket_name=self._name, scope=self._scope
        )
