"""
Tests for the REST data source.

HTTP exchanges are scripted with httpx.MockTransport.
"""

import json

import httpx
import pytest

from recordsync_errors import TransportError
from recordsync_models import EntityRef, PageMode, PageState, PendingOp, QuerySpec, SortSpec
from recordsync_rest import RestDataSource


def make_source(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = RestDataSource("https://api.test/v1", client=client, **kwargs)
    source.init(None, {"entityType": "Product", "resource": "products"})
    return source


def update_op(record_id="7", base_version="3", patch=None):
    return PendingOp(
        opId="op-1",
        type="update",
        entity=EntityRef(type="Product", id=record_id),
        patch=patch or {"price": 10},
        baseVersion=base_version,
    )


class TestRestQuery:
    """Tests for list requests."""

    @pytest.mark.asyncio
    async def test_query_params_and_total_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json=[{"id": 1, "name": "a", "version": "4"}, {"id": 2, "name": "b"}],
                headers={"X-Total-Count": "42"},
            )

        source = make_source(handler)
        result = await source.query(QuerySpec(
            resource="products",
            entityType="Product",
            filter={"status": "open"},
            sort=[SortSpec(field="name"), SortSpec(field="price", dir="desc")],
            page=PageState(mode=PageMode.PAGE, page=2, limit=10),
        ))

        request = seen[0]
        assert request.url.path == "/v1/products"
        assert request.url.params["status"] == "open"
        assert request.url.params["sort"] == "name,-price"
        assert request.url.params["page"] == "2"
        assert request.url.params["limit"] == "10"
        assert result.pageInfo.totalCount == 42
        assert [ref.id for ref in result.result] == ["1", "2"]
        assert result.entities["Product"][0]["version"] == "4"
        assert result.entities["Product"][1]["version"] == "0"

    @pytest.mark.asyncio
    async def test_wrapped_body_and_page_info(self):
        def handler(request):
            assert request.url.params["after"] == "c1"
            return httpx.Response(200, json={
                "items": [{"id": "x", "version": "1"}],
                "pageInfo": {"totalCount": 9, "nextCursor": "c2"},
            })

        source = make_source(handler)
        result = await source.query(QuerySpec(
            resource="products",
            page=PageState(mode=PageMode.CURSOR, after="c1", limit=1),
        ))

        assert result.pageInfo.totalCount == 9
        assert result.pageInfo.nextCursor == "c2"

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        source = make_source(lambda request: httpx.Response(503))

        with pytest.raises(TransportError) as exc:
            await source.query(QuerySpec(resource="products"))
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = make_source(handler)

        with pytest.raises(TransportError):
            await source.query(QuerySpec(resource="products"))


class TestRestMutate:
    """Tests for create/update/delete requests."""

    @pytest.mark.asyncio
    async def test_create_posts_data(self):
        def handler(request):
            assert request.method == "POST"
            assert json.loads(request.content) == {"name": "new"}
            return httpx.Response(201, json={"id": 55, "name": "new", "version": "1"})

        source = make_source(handler)
        result = await source.mutate([PendingOp(
            opId="op-1", type="create", entity=EntityRef(type="Product", id="tmp-1"), data={"name": "new"},
        )])

        assert result.applied[0].serverId == "55"
        assert result.entities["Product"][0]["id"] == "55"

    @pytest.mark.asyncio
    async def test_update_sends_if_match(self):
        def handler(request):
            assert request.method == "PATCH"
            assert request.url.path == "/v1/products/7"
            assert request.headers["If-Match"] == "3"
            return httpx.Response(200, json={"id": "7", "price": 10}, headers={"ETag": "4"})

        source = make_source(handler)
        result = await source.mutate([update_op()])

        assert [a.opId for a in result.applied] == ["op-1"]
        assert result.entities["Product"][0]["version"] == "4"

    @pytest.mark.asyncio
    async def test_precondition_failed_becomes_conflict(self):
        """412 is followed by exactly one GET of the item."""
        calls = []

        def handler(request):
            calls.append(request.method)
            if request.method == "PATCH":
                return httpx.Response(412)
            return httpx.Response(200, json={"id": "7", "price": 12, "version": "5"})

        source = make_source(handler)
        result = await source.mutate([update_op()])

        assert calls == ["PATCH", "GET"]
        conflict = result.conflicts[0]
        assert conflict.latestVersion == "5"
        assert conflict.server["price"] == 12
        assert conflict.httpStatus == 412
        assert conflict.local.patch == {"price": 10}
        assert result.applied == []

    @pytest.mark.asyncio
    async def test_mapped_statuses_are_rejections(self):
        statuses = iter([404, 422])

        def handler(request):
            return httpx.Response(next(statuses), json={"detail": "nope"})

        source = make_source(handler)
        result = await source.mutate([
            update_op(),
            PendingOp(opId="op-2", type="delete", entity=EntityRef(type="Product", id="8")),
        ])

        assert [(r.error.code, r.error.httpStatus) for r in result.rejected] == [
            ("not_found", 404),
            ("validation", 422),
        ]
        assert result.rejected[0].error.message == "nope"

    @pytest.mark.asyncio
    async def test_unmapped_status_raises(self):
        source = make_source(lambda request: httpx.Response(500))

        with pytest.raises(TransportError):
            await source.mutate([update_op()])

    @pytest.mark.asyncio
    async def test_resource_item_path(self):
        def handler(request):
            assert request.url.raw_path == b"/v1/catalog/items/a%2Fb"
            return httpx.Response(204)

        source = make_source(handler, resources={"products": {"path": "catalog", "itemPath": "catalog/items/{id}"}})
        result = await source.mutate(
            [PendingOp(opId="op-1", type="delete", entity=EntityRef(type="Product", id="a/b"))]
        )

        assert len(result.applied) == 1
