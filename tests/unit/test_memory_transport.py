"""
Unit tests for InMemoryTransport.

Tests cover:
- Routing and unknown paths
- Clause evaluation for every wire clause type
- Sorting and pagination
- Failure injection
- Strictly increasing timestamps
"""

import pytest

from kii_sdk import InMemoryTransport, Transport
from kii_sdk.errors import AclEntryRejectedError, TransportError
from kii_sdk.transport.memory import _matches

BUCKET = "/apps/app/buckets/items"


async def _create(transport, **fields):
    response = await transport.send("POST", f"{BUCKET}/objects", json=fields)
    return response.json()["_id"]


async def _query(transport, clause=None, **extra):
    bucket_query = {"clause": clause or {"type": "all"}}
    body = {"bucketQuery": bucket_query}
    for key in ("orderBy", "descending"):
        if key in extra:
            bucket_query[key] = extra.pop(key)
    body.update(extra)
    response = await transport.send("POST", f"{BUCKET}/query", json=body)
    return response.json()


class TestClauseEvaluation:
    """Tests for the clause evaluator."""

    RECORD = {"name": "alice", "age": 30, "active": True, "tags": "x"}

    @pytest.mark.parametrize("clause,expected", [
        ({"type": "all"}, True),
        ({"type": "eq", "field": "name", "value": "alice"}, True),
        ({"type": "eq", "field": "name", "value": "bob"}, False),
        ({"type": "eq", "field": "missing", "value": None}, False),
        ({"type": "in", "field": "age", "values": [10, 30]}, True),
        ({"type": "in", "field": "age", "values": [10]}, False),
        ({"type": "prefix", "field": "name", "prefix": "al"}, True),
        ({"type": "prefix", "field": "age", "prefix": "3"}, False),
        ({"type": "range", "field": "age", "lowerLimit": 30, "lowerIncluded": True}, True),
        ({"type": "range", "field": "age", "lowerLimit": 30, "lowerIncluded": False}, False),
        ({"type": "range", "field": "age", "upperLimit": 31, "upperIncluded": False}, True),
        ({"type": "range", "field": "age", "upperLimit": 30, "upperIncluded": False}, False),
        ({"type": "range", "field": "name", "lowerLimit": 1, "lowerIncluded": True}, False),
        ({"type": "range", "field": "active", "lowerLimit": 0, "lowerIncluded": True}, False),
        ({"type": "not", "clause": {"type": "eq", "field": "name", "value": "bob"}}, True),
        ({"type": "and", "clauses": [
            {"type": "eq", "field": "name", "value": "alice"},
            {"type": "eq", "field": "age", "value": 31},
        ]}, False),
        ({"type": "or", "clauses": [
            {"type": "eq", "field": "name", "value": "bob"},
            {"type": "eq", "field": "age", "value": 30},
        ]}, True),
    ])
    def test_matches(self, clause, expected):
        assert _matches(clause, self.RECORD) is expected

    def test_unknown_clause(self):
        with pytest.raises(ValueError):
            _matches({"type": "geo"}, self.RECORD)


class TestQueries:
    """Tests for query handling."""

    @pytest.fixture
    def transport(self):
        return InMemoryTransport()

    @pytest.mark.asyncio
    async def test_default_order_is_creation(self, transport):
        ids = [await _create(transport, n=n) for n in (3, 1, 2)]
        result = await _query(transport)
        assert [r["_id"] for r in result["results"]] == ids

    @pytest.mark.asyncio
    async def test_missing_sort_values_last(self, transport):
        await _create(transport, n=2)
        await _create(transport)
        await _create(transport, n=1)
        result = await _query(transport, orderBy="n", descending=True)
        assert [r.get("n") for r in result["results"]] == [2, 1, None]

    @pytest.mark.asyncio
    async def test_pagination_keys(self, transport):
        for n in range(5):
            await _create(transport, n=n)
        first = await _query(transport, orderBy="n", bestEffortLimit=2)
        assert [r["n"] for r in first["results"]] == [0, 1]
        second = await _query(
            transport, orderBy="n", bestEffortLimit=2,
            paginationKey=first["nextPaginationKey"],
        )
        third = await _query(
            transport, orderBy="n", bestEffortLimit=2,
            paginationKey=second["nextPaginationKey"],
        )
        assert [r["n"] for r in third["results"]] == [4]
        assert "nextPaginationKey" not in third

    @pytest.mark.asyncio
    async def test_query_unknown_bucket_is_empty(self, transport):
        result = await _query(transport)
        assert result == {"results": []}

    @pytest.mark.asyncio
    async def test_invalid_limit(self, transport):
        with pytest.raises(TransportError) as exc_info:
            await _query(transport, bestEffortLimit=500)
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_unsupported_clause(self, transport):
        await _create(transport, n=1)
        with pytest.raises(TransportError) as exc_info:
            await _query(transport, {"type": "geo"})
        assert exc_info.value.status == 400


class TestRoutingAndFailures:
    """Tests for routing and failure injection."""

    @pytest.fixture
    def transport(self):
        return InMemoryTransport()

    def test_satisfies_protocol(self, transport):
        assert isinstance(transport, Transport)

    @pytest.mark.asyncio
    async def test_unknown_path(self, transport):
        with pytest.raises(TransportError) as exc_info:
            await transport.send("GET", "/apps/app/nothing/here")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_path_outside_app(self, transport):
        with pytest.raises(TransportError) as exc_info:
            await transport.send("GET", "/users/me")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_missing_object(self, transport):
        await _create(transport, n=1)
        with pytest.raises(TransportError) as exc_info:
            await transport.send("GET", f"{BUCKET}/objects/nope")
        assert exc_info.value.status == 404
        assert exc_info.value.body["errorCode"] == "OBJECT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_fail_next_count(self, transport):
        transport.fail_next(503, count=2)
        for _ in range(2):
            with pytest.raises(TransportError):
                await _create(transport, n=1)
        await _create(transport, n=1)
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_network_failure(self, transport):
        transport.fail_next(None)
        with pytest.raises(TransportError) as exc_info:
            await _create(transport, n=1)
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_injected_acl_rejection(self, transport):
        transport.fail_next(400, {
            "errorCode": "ACL_ENTRY_REJECTED",
            "rejectedEntry": {"subject": "UserID:x", "permission": "READ_EXISTING_OBJECT"},
        })
        with pytest.raises(AclEntryRejectedError) as exc_info:
            await _create(transport, n=1)
        assert exc_info.value.entry is not None

    @pytest.mark.asyncio
    async def test_invalid_token(self, transport):
        with pytest.raises(TransportError) as exc_info:
            await transport.send("GET", "/apps/app/users/me", access_token="bogus")
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, transport):
        object_id = await _create(transport, n=0)
        seen = []
        for n in range(5):
            response = await transport.send(
                "PATCH", f"{BUCKET}/objects/{object_id}", json={"n": n}
            )
            seen.append(response.json()["_modified"])
        assert seen == sorted(set(seen))

    @pytest.mark.asyncio
    async def test_full_replacement_keeps_metadata(self, transport):
        object_id = await _create(transport, a=1, b=2)
        await transport.send("PUT", f"{BUCKET}/objects/{object_id}", json={"b": 3})
        record = (await transport.send("GET", f"{BUCKET}/objects/{object_id}")).json()
        assert record["_id"] == object_id
        assert "a" not in record
        assert record["b"] == 3

    @pytest.mark.asyncio
    async def test_shred_requires_trash(self, transport):
        files = "/apps/app/filebuckets/docs/files"
        file_id = (await transport.send("POST", files, json={"title": "t"})).json()["_id"]
        with pytest.raises(TransportError) as exc_info:
            await transport.send("DELETE", f"{files}/{file_id}")
        assert exc_info.value.status == 409
        await transport.send("POST", f"{files}/{file_id}/trash")
        await transport.send("DELETE", f"{files}/{file_id}")

    @pytest.mark.asyncio
    async def test_user_replacement_keeps_typed_attributes(self, transport):
        created = await transport.send("POST", "/apps/app/users", json={
            "loginName": "alice123", "password": "abc123$$",
            "displayName": "Alice", "country": "JP", "hobby": "chess",
        })
        user_id = created.json()["_id"]
        await transport.send("PUT", f"/apps/app/users/{user_id}", json={"age": 30})

        record = transport.user_record(user_id)
        assert record["loginName"] == "alice123"
        assert record["displayName"] == "Alice"
        assert record["country"] == "JP"
        assert record["age"] == 30
        assert "hobby" not in record

    @pytest.mark.asyncio
    async def test_user_replacement_can_set_typed_attributes(self, transport):
        created = await transport.send("POST", "/apps/app/users", json={
            "loginName": "alice123", "password": "abc123$$", "displayName": "Alice",
        })
        user_id = created.json()["_id"]
        await transport.send(
            "PUT", f"/apps/app/users/{user_id}",
            json={"displayName": "Ally", "loginName": "mallory"},
        )

        record = transport.user_record(user_id)
        assert record["displayName"] == "Ally"
        assert record["loginName"] == "alice123"
