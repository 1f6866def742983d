from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Set

import httpx

from kbsync.logging import get_logger
from kbsync.service.errors import StoreFailure

logger = get_logger(__name__)


class VectorIndex(Protocol):
    async def delete_namespace(self, owner_id: str) -> None: ...

    async def delete_by_tag(self, owner_id: str, tag: str) -> None: ...

    async def close(self) -> None: ...


class HttpVectorIndex:
    """Client for a Pinecone-compatible ``/vectors/delete`` endpoint.

    Deletes are idempotent: a namespace or tag with no matches, including a
    404 for an unknown namespace, counts as success.
    """

    def __init__(
        self,
        host: str,
        api_key: Optional[str],
        *,
        api_version: str = "2025-04",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = host
        self.api_key = api_key
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "X-Pinecone-API-Version": self.api_version,
                "Content-Type": "application/json",
            }
            if self.api_key:
                headers["Api-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=f"https://{self.host}",
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def _delete(self, owner_id: str, body: dict, *, operation: str) -> None:
        client = await self._get_client()
        try:
            response = await client.post("/vectors/delete", json=body)
            if response.status_code == 404:
                logger.info("vector_delete_no_match", owner_id=owner_id, operation=operation)
                return
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "vector_delete_failed",
                owner_id=owner_id,
                operation=operation,
                status_code=e.response.status_code,
            )
            raise StoreFailure(
                f"vector index returned {e.response.status_code}",
                store="vector",
                detail={"operation": operation},
            ) from e
        except httpx.TimeoutException as e:
            logger.error("vector_delete_timeout", owner_id=owner_id, operation=operation)
            raise StoreFailure(
                "vector index request timed out", store="vector", detail={"operation": operation}
            ) from e
        except httpx.ConnectError as e:
            logger.error("vector_delete_unreachable", owner_id=owner_id, operation=operation, error=str(e))
            raise StoreFailure(
                "vector index unreachable", store="vector", detail={"operation": operation}
            ) from e
        logger.info("vector_delete", owner_id=owner_id, operation=operation)

    async def delete_namespace(self, owner_id: str) -> None:
        await self._delete(
            owner_id,
            {"deleteAll": True, "namespace": owner_id},
            operation="delete_namespace",
        )

    async def delete_by_tag(self, owner_id: str, tag: str) -> None:
        await self._delete(
            owner_id,
            {"filter": {"tag": tag}, "namespace": owner_id},
            operation="delete_by_tag",
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MemoryVectorIndex:
    """Process-local index of tag sets per namespace.

    ``record`` stands in for the external ingestion pipeline in local runs
    and tests.
    """

    def __init__(self) -> None:
        self._namespaces: Dict[str, Dict[str, Set[str]]] = {}
        self._lock = threading.Lock()
        self.calls: List[tuple] = []

    def record(self, owner_id: str, tag: str, vector_id: str) -> None:
        with self._lock:
            self._namespaces.setdefault(owner_id, {}).setdefault(tag, set()).add(vector_id)

    def tags(self, owner_id: str) -> List[str]:
        with self._lock:
            return sorted(self._namespaces.get(owner_id, {}))

    async def delete_namespace(self, owner_id: str) -> None:
        with self._lock:
            self.calls.append(("delete_namespace", owner_id))
            self._namespaces.pop(owner_id, None)

    async def delete_by_tag(self, owner_id: str, tag: str) -> None:
        with self._lock:
            self.calls.append(("delete_by_tag", owner_id, tag))
            namespace = self._namespaces.get(owner_id)
            if namespace is not None:
                namespace.pop(tag, None)

    async def close(self) -> None:
        return None
