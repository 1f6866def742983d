"""Unanswered questions and their promotion into knowledge rules.

Answering a question adds exactly one knowledge rule through the
synchronization saga, so the snapshot and archive follow the same path as a
``PUT /v1/configuration``. The question row is removed only after the saga
succeeds.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from kbsync.logging import get_logger
from kbsync.service.diff import ConfigurationDiff, DeleteNone, RuleInput
from kbsync.service.errors import NotOwnedError, StoreFailure, ValidationError
from kbsync.service.sync import SyncResult, SynchronizationOrchestrator
from kbsync.storage.common import generate_uuid, serialize_datetime
from kbsync.storage.models import UnansweredQuestion

logger = get_logger(__name__)


def question_view(question: UnansweredQuestion) -> Dict[str, Any]:
    return {
        "id": question.id,
        "question": question.question,
        "context": question.context,
        "asked_at": serialize_datetime(question.asked_at),
        "created_at": serialize_datetime(question.created_at),
    }


def answered_rule_content(question: str, answer: str) -> str:
    return f"Q: {question.strip()}\nA: {answer.strip()}"


class QuestionService:
    def __init__(
        self,
        store: Any,
        orchestrator: SynchronizationOrchestrator,
        *,
        max_question_chars: int = 10000,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.max_question_chars = max_question_chars

    def _require_text(self, label: str, value: Optional[str]) -> str:
        if not value or not value.strip():
            raise ValidationError(f"{label} is required")
        if len(value) > self.max_question_chars:
            raise ValidationError(
                f"{label} exceeds {self.max_question_chars} characters",
                detail={"length": len(value)},
            )
        return value

    async def record(
        self,
        owner_id: str,
        question: str,
        *,
        context: Optional[str] = None,
        asked_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        self._require_text("question", question)
        row = UnansweredQuestion(
            id=generate_uuid(),
            owner_id=owner_id,
            question=question.strip(),
            context=context,
            asked_at=asked_at or datetime.utcnow(),
        )
        await asyncio.to_thread(self.store.insert_question, row)
        logger.info("question_recorded", owner_id=owner_id, question_id=row.id)
        return question_view(row)

    async def list_questions(self, owner_id: str) -> List[Dict[str, Any]]:
        rows = await asyncio.to_thread(self.store.list_questions, owner_id)
        return [question_view(row) for row in rows]

    async def delete(self, owner_id: str, question_id: str) -> None:
        removed = await asyncio.to_thread(self.store.delete_question, owner_id, question_id)
        if not removed:
            raise NotOwnedError("question not found", detail={"question_id": question_id})
        logger.info("question_discarded", owner_id=owner_id, question_id=question_id)

    async def answer(self, owner_id: str, question_id: str, answer: str) -> SyncResult:
        """Turn the question and ``answer`` into one knowledge rule.

        Returns the saga result; when it is not ``ok`` the question is kept.
        """
        self._require_text("answer", answer)
        question = await asyncio.to_thread(self.store.get_question, owner_id, question_id)
        if question is None:
            raise NotOwnedError("question not found", detail={"question_id": question_id})

        diff = ConfigurationDiff(
            rules_to_add=[RuleInput(content=answered_rule_content(question.question, answer))],
            rules_to_delete=DeleteNone(),
            files_to_delete=DeleteNone(),
        )
        result = await self.orchestrator.update_configuration(owner_id, diff)
        if not result.ok:
            logger.info(
                "question_answer_failed",
                owner_id=owner_id,
                question_id=question_id,
                failed_step=result.failed_step,
            )
            return result

        try:
            removed = await asyncio.to_thread(self.store.delete_question, owner_id, question_id)
        except Exception as exc:
            logger.error(
                "question_cleanup_failed",
                owner_id=owner_id,
                question_id=question_id,
                error=str(exc),
            )
            raise StoreFailure(
                "answer stored but the question could not be removed",
                store="relational",
                committed=True,
                detail={"question_id": question_id},
            ) from exc
        if not removed:
            # answered concurrently; the rule from this call still stands
            logger.warning("question_already_removed", owner_id=owner_id, question_id=question_id)
        logger.info(
            "question_answered",
            owner_id=owner_id,
            question_id=question_id,
            rule_ids=[rule.id for rule in result.applied.inserted_rules],
        )
        return result
