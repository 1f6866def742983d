import json

import httpx
import pytest

from kbsync.service.errors import StoreFailure
from kbsync.service.vector_index import HttpVectorIndex, MemoryVectorIndex


def _index(handler) -> HttpVectorIndex:
    return HttpVectorIndex(
        "index-abc.svc.example.io",
        "key-123",
        api_version="2025-04",
        transport=httpx.MockTransport(handler),
    )


class TestHttpVectorIndex:
    @pytest.mark.asyncio
    async def test_delete_namespace_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        index = _index(handler)
        await index.delete_namespace("owner-1")
        await index.close()

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://index-abc.svc.example.io/vectors/delete"
        assert request.headers["Api-Key"] == "key-123"
        assert request.headers["X-Pinecone-API-Version"] == "2025-04"
        assert json.loads(request.content) == {"deleteAll": True, "namespace": "owner-1"}

    @pytest.mark.asyncio
    async def test_delete_by_tag_uses_metadata_filter(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        index = _index(handler)
        await index.delete_by_tag("owner-1", "owner-1/knowledge-snapshot")
        await index.close()

        assert bodies == [
            {"filter": {"tag": "owner-1/knowledge-snapshot"}, "namespace": "owner-1"}
        ]

    @pytest.mark.asyncio
    async def test_missing_namespace_is_success(self):
        index = _index(lambda request: httpx.Response(404, json={"message": "not found"}))
        await index.delete_namespace("owner-1")
        await index.delete_namespace("owner-1")
        await index.close()

    @pytest.mark.asyncio
    async def test_server_error_raises_store_failure(self):
        index = _index(lambda request: httpx.Response(500, json={}))

        with pytest.raises(StoreFailure) as exc_info:
            await index.delete_by_tag("owner-1", "tag")
        await index.close()

        assert exc_info.value.store == "vector"
        assert exc_info.value.detail["operation"] == "delete_by_tag"

    @pytest.mark.asyncio
    async def test_connect_error_raises_store_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        index = _index(handler)
        with pytest.raises(StoreFailure, match="unreachable"):
            await index.delete_namespace("owner-1")
        await index.close()


class TestMemoryVectorIndex:
    @pytest.mark.asyncio
    async def test_tag_and_namespace_deletes(self):
        index = MemoryVectorIndex()
        index.record("o", "t1", "v1")
        index.record("o", "t2", "v2")

        await index.delete_by_tag("o", "t1")
        assert index.tags("o") == ["t2"]

        await index.delete_namespace("o")
        await index.delete_namespace("o")
        assert index.tags("o") == []
        assert index.calls[-1] == ("delete_namespace", "o")
