from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from kbsync.logging import get_logger
from kbsync.service.errors import NotOwnedError, ValidationError
from kbsync.storage.common import generate_uuid, serialize_datetime
from kbsync.storage.models import ToneRule

logger = get_logger(__name__)


def tone_rule_view(rule: ToneRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "content": rule.content,
        "created_at": serialize_datetime(rule.created_at),
    }


class ToneRuleService:
    """Owner-scoped tone rules.

    Tone rules live only in the relational store; they are not part of the
    knowledge snapshot, so writes bypass the synchronization saga.
    """

    def __init__(self, store: Any, *, max_rule_chars: int = 10000) -> None:
        self.store = store
        self.max_rule_chars = max_rule_chars

    async def list_rules(self, owner_id: str) -> List[Dict[str, Any]]:
        rules = await asyncio.to_thread(self.store.list_tone_rules, owner_id)
        return [tone_rule_view(rule) for rule in rules]

    async def create_rule(self, owner_id: str, content: str) -> Dict[str, Any]:
        if not content or not content.strip():
            raise ValidationError("tone rule content is required")
        if len(content) > self.max_rule_chars:
            raise ValidationError(
                f"tone rule exceeds {self.max_rule_chars} characters",
                detail={"length": len(content)},
            )
        rule = ToneRule(id=generate_uuid(), owner_id=owner_id, content=content)
        await asyncio.to_thread(self.store.insert_tone_rule, rule)
        logger.info("tone_rule_created", owner_id=owner_id, rule_id=rule.id)
        return tone_rule_view(rule)

    async def get_rule(self, owner_id: str, rule_id: str) -> Dict[str, Any]:
        rule = await asyncio.to_thread(self.store.get_tone_rule, owner_id, rule_id)
        if rule is None:
            raise NotOwnedError("tone rule not found", detail={"rule_id": rule_id})
        return tone_rule_view(rule)

    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        removed = await asyncio.to_thread(self.store.delete_tone_rule, owner_id, rule_id)
        if not removed:
            raise NotOwnedError("tone rule not found", detail={"rule_id": rule_id})
        logger.info("tone_rule_deleted", owner_id=owner_id, rule_id=rule_id)
