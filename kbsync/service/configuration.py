from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from kbsync.logging import get_logger
from kbsync.service.cache import ConfigCache, config_cache_key
from kbsync.service.errors import NotOwnedError, ValidationError
from kbsync.storage.common import serialize_datetime
from kbsync.storage.models import FileAsset, KnowledgeRule

logger = get_logger(__name__)


def rule_view(rule: KnowledgeRule) -> Dict[str, Any]:
    return {"id": rule.id, "content": rule.content}


def file_view(asset: FileAsset) -> Dict[str, Any]:
    return {
        "id": asset.id,
        "name": asset.name,
        "content_type": asset.content_type,
        "size": asset.size,
    }


class ConfigurationService:
    """Read side of an owner's configuration.

    The full view is served through the cache and invalidated by the
    orchestrator; pages and single-row lookups always hit the store.
    """

    def __init__(
        self,
        store: Any,
        cache: ConfigCache,
        *,
        ttl_seconds: int = 300,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    async def get_view(self, owner_id: str) -> Dict[str, List[Dict[str, Any]]]:
        key = config_cache_key(owner_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        rules = await asyncio.to_thread(self.store.list_rules, owner_id)
        files = await asyncio.to_thread(self.store.list_files, owner_id)
        view = {
            "rules": [rule_view(rule) for rule in rules],
            "files": [file_view(asset) for asset in files],
        }
        await self.cache.set(key, view, self.ttl_seconds)
        logger.debug("configuration_view_cached", owner_id=owner_id)
        return view

    async def get_page(self, owner_id: str, skip: int = 0, take: int | None = None) -> Dict[str, Any]:
        if skip < 0:
            raise ValidationError("skip must not be negative")
        if take is None:
            take = self.default_page_size
        if take <= 0 or take > self.max_page_size:
            raise ValidationError(f"take must be between 1 and {self.max_page_size}")
        rules = await asyncio.to_thread(self.store.list_rules_page, owner_id, skip, take)
        files = await asyncio.to_thread(self.store.list_files_page, owner_id, skip, take)
        return {
            "skip": skip,
            "take": take,
            "rules": [rule_view(rule) for rule in rules],
            "files": [file_view(asset) for asset in files],
        }

    async def get_file(self, owner_id: str, file_id: str) -> Dict[str, Any]:
        found = await asyncio.to_thread(self.store.get_files_by_ids, owner_id, [file_id])
        if not found:
            raise NotOwnedError("file not found", detail={"file_id": file_id})
        return file_view(found[0])

    async def get_rule(self, owner_id: str, rule_id: str) -> Dict[str, Any]:
        found = await asyncio.to_thread(self.store.get_rules_by_ids, owner_id, [rule_id])
        if not found:
            raise NotOwnedError("rule not found", detail={"rule_id": rule_id})
        rule = found[0]
        return {
            **rule_view(rule),
            "created_at": serialize_datetime(rule.created_at),
            "updated_at": serialize_datetime(rule.updated_at),
        }
