"""
Clause and query model for server-side filtering.

This module provides:
- Clause: Immutable predicate tree (comparisons combined with and/or/not)
- Query: Execution envelope around one root clause (sort, limit, target)
- QueryResult: One page of hydrated results plus the continuation key

Clauses never touch the network. Buckets execute queries and hydrate the
result rows.

Invariants:
    - A Clause never changes after construction
    - A Query has exactly one root clause and targets at most one of
      collection (object bucket) or container (file bucket)
    - limit is checked at execution time, not when it is set
    - The last sort_by_asc/sort_by_desc call wins

Example:
    >>> clause = Clause.and_(
    ...     Clause.equals("status", "open"),
    ...     Clause.greater_than("score", 10),
    ... )
    >>> query = Query.with_clause(clause)
    >>> query.sort_by_desc("score")
    >>> query.limit = 50
    >>> result = bucket.execute_query(query)
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import InvalidQueryError, ValidationError

MIN_LIMIT = 1
MAX_LIMIT = 100

T = TypeVar("T")


class ClauseOp(Enum):
    """Supported clause operators."""

    ALL = "all"
    EQUALS = "eq"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "ge"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "le"
    IN = "in"
    STARTS_WITH = "prefix"
    AND = "and"
    OR = "or"
    NOT = "not"


_RANGE_OPS = {
    ClauseOp.GREATER_THAN: ("lowerLimit", "lowerIncluded", False),
    ClauseOp.GREATER_THAN_OR_EQUAL: ("lowerLimit", "lowerIncluded", True),
    ClauseOp.LESS_THAN: ("upperLimit", "upperIncluded", False),
    ClauseOp.LESS_THAN_OR_EQUAL: ("upperLimit", "upperIncluded", True),
}


@dataclass(frozen=True)
class Clause:
    """A node of the predicate tree.

    Build clauses with the classmethods rather than the constructor.

    Attributes:
        op: Operator
        key: Field the leaf compares (None for combinators and ALL)
        value: Comparison operand (tuple of values for IN)
        children: Sub-clauses for AND, OR and NOT
    """

    op: ClauseOp
    key: str | None = None
    value: Any = None
    children: tuple[Clause, ...] = field(default_factory=tuple)

    @classmethod
    def all(cls) -> Clause:
        """Match every record."""
        return cls(ClauseOp.ALL)

    @classmethod
    def equals(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.EQUALS, key, value)

    @classmethod
    def not_equals(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.NOT_EQUALS, key, value)

    @classmethod
    def greater_than(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.GREATER_THAN, key, value)

    @classmethod
    def greater_than_or_equal(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.GREATER_THAN_OR_EQUAL, key, value)

    @classmethod
    def less_than(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.LESS_THAN, key, value)

    @classmethod
    def less_than_or_equal(cls, key: str, value: Any) -> Clause:
        return cls._leaf(ClauseOp.LESS_THAN_OR_EQUAL, key, value)

    @classmethod
    def in_(cls, key: str, values: list[Any] | tuple[Any, ...]) -> Clause:
        """Match records whose value for key is one of values."""
        if not values:
            raise ValidationError("in_ requires at least one value", field_name=key)
        return cls._leaf(ClauseOp.IN, key, tuple(values))

    @classmethod
    def starts_with(cls, key: str, prefix: str) -> Clause:
        if not isinstance(prefix, str):
            raise ValidationError("starts_with requires a string prefix", field_name=key)
        return cls._leaf(ClauseOp.STARTS_WITH, key, prefix)

    @classmethod
    def and_(cls, *clauses: Clause) -> Clause:
        """Conjunction of clauses. A single clause is returned unchanged."""
        return cls._combine(ClauseOp.AND, clauses)

    @classmethod
    def or_(cls, *clauses: Clause) -> Clause:
        """Disjunction of clauses. A single clause is returned unchanged."""
        return cls._combine(ClauseOp.OR, clauses)

    @classmethod
    def not_(cls, clause: Clause) -> Clause:
        return cls(ClauseOp.NOT, children=(clause,))

    @classmethod
    def _leaf(cls, op: ClauseOp, key: str, value: Any) -> Clause:
        if not key or not isinstance(key, str):
            raise ValidationError("Clause key must be a non-empty string", field_name=key)
        return cls(op, key=key, value=value)

    @classmethod
    def _combine(cls, op: ClauseOp, clauses: tuple[Clause, ...]) -> Clause:
        if not clauses:
            raise ValidationError(f"{op.value} requires at least one clause")
        for clause in clauses:
            if not isinstance(clause, Clause):
                raise ValidationError(f"{op.value} accepts Clause instances only")
        if len(clauses) == 1:
            return clauses[0]
        return cls(op, children=tuple(clauses))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the backend clause format."""
        if self.op == ClauseOp.ALL:
            return {"type": "all"}
        if self.op == ClauseOp.EQUALS:
            return {"type": "eq", "field": self.key, "value": self.value}
        if self.op == ClauseOp.NOT_EQUALS:
            return {
                "type": "not",
                "clause": {"type": "eq", "field": self.key, "value": self.value},
            }
        if self.op in _RANGE_OPS:
            limit_key, included_key, included = _RANGE_OPS[self.op]
            return {
                "type": "range",
                "field": self.key,
                limit_key: self.value,
                included_key: included,
            }
        if self.op == ClauseOp.IN:
            return {"type": "in", "field": self.key, "values": list(self.value)}
        if self.op == ClauseOp.STARTS_WITH:
            return {"type": "prefix", "field": self.key, "prefix": self.value}
        if self.op == ClauseOp.NOT:
            return {"type": "not", "clause": self.children[0].to_dict()}
        return {
            "type": self.op.value,
            "clauses": [child.to_dict() for child in self.children],
        }


class Query:
    """Execution envelope for a clause.

    Apart from sort_by_asc, sort_by_desc and the limit setter, a query is
    never modified. Buckets bind the target with a copy.
    """

    def __init__(
        self,
        clause: Clause | None = None,
        *,
        collection: str | None = None,
        container: str | None = None,
    ) -> None:
        self._clause = clause if clause is not None else Clause.all()
        self._collection = collection
        self._container = container
        self._sort_field: str | None = None
        self._sort_descending = False
        self._limit: int | None = None

    @classmethod
    def with_clause(cls, clause: Clause) -> Query:
        """Create a query from a root clause."""
        if not isinstance(clause, Clause):
            raise ValidationError("Query requires a Clause")
        return cls(clause)

    @property
    def clause(self) -> Clause:
        return self._clause

    @property
    def collection(self) -> str | None:
        """Object bucket being queried, None when querying files."""
        return self._collection

    @property
    def container(self) -> str | None:
        """File bucket being queried, None when querying objects."""
        return self._container

    @property
    def sort_field(self) -> str | None:
        return self._sort_field

    @property
    def sort_descending(self) -> bool:
        return self._sort_descending

    @property
    def limit(self) -> int | None:
        """Maximum results per page, valid range 1..100."""
        return self._limit

    @limit.setter
    def limit(self, value: int | None) -> None:
        self._limit = value

    def sort_by_asc(self, field_name: str) -> None:
        """Sort ascending by field, replacing any previous sort."""
        self._sort_field = field_name
        self._sort_descending = False

    def sort_by_desc(self, field_name: str) -> None:
        """Sort descending by field, replacing any previous sort."""
        self._sort_field = field_name
        self._sort_descending = True

    def validate(self) -> None:
        """Check the query can be executed.

        Raises:
            InvalidQueryError: If limit is out of range or two targets are set
        """
        if self._collection is not None and self._container is not None:
            raise InvalidQueryError("Query cannot target both a collection and a container")
        if self._limit is not None:
            if (
                not isinstance(self._limit, int)
                or isinstance(self._limit, bool)
                or not MIN_LIMIT <= self._limit <= MAX_LIMIT
            ):
                raise InvalidQueryError(
                    f"limit must be between {MIN_LIMIT} and {MAX_LIMIT}, got {self._limit!r}",
                    limit=self._limit,
                )

    def for_collection(self, name: str) -> Query:
        """Copy of this query bound to an object bucket."""
        if self._container is not None:
            raise InvalidQueryError(f"Query targets file container '{self._container}'")
        if self._collection is not None and self._collection != name:
            raise InvalidQueryError(f"Query targets collection '{self._collection}'")
        bound = copy.copy(self)
        bound._collection = name
        return bound

    def for_container(self, name: str) -> Query:
        """Copy of this query bound to a file bucket."""
        if self._collection is not None:
            raise InvalidQueryError(f"Query targets collection '{self._collection}'")
        if self._container is not None and self._container != name:
            raise InvalidQueryError(f"Query targets container '{self._container}'")
        bound = copy.copy(self)
        bound._container = name
        return bound

    def to_dict(self, pagination_key: str | None = None) -> dict[str, Any]:
        """Convert to the backend query format."""
        bucket_query: dict[str, Any] = {"clause": self._clause.to_dict()}
        if self._sort_field is not None:
            bucket_query["orderBy"] = self._sort_field
            bucket_query["descending"] = self._sort_descending

        body: dict[str, Any] = {"bucketQuery": bucket_query}
        if self._limit is not None:
            body["bestEffortLimit"] = self._limit
        if pagination_key:
            body["paginationKey"] = pagination_key
        return body

    def __repr__(self) -> str:
        return (
            f"Query(clause={self._clause!r}, collection={self._collection!r}, "
            f"container={self._container!r}, sort_field={self._sort_field!r}, "
            f"sort_descending={self._sort_descending}, limit={self._limit!r})"
        )


@dataclass
class QueryResult(Generic[T]):
    """One page of query results.

    Attributes:
        results: Hydrated entities in server order
        next_pagination_key: Key for the next page, None on the last page
    """

    results: list[T] = field(default_factory=list)
    next_pagination_key: str | None = None

    @property
    def has_next(self) -> bool:
        return self.next_pagination_key is not None

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)
