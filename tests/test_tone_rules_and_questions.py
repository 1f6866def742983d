from datetime import datetime, timedelta

import pytest

from kbsync.service.archive import snapshot_key
from kbsync.service.diff import ConfigurationDiff, RuleInput
from kbsync.service.errors import NotOwnedError, ValidationError
from kbsync.service.questions import QuestionService, answered_rule_content
from kbsync.service.tone_rules import ToneRuleService
from kbsync.storage.memory import MemoryStore

OWNER = "owner-1"


@pytest.fixture
def questions(sync_env) -> QuestionService:
    return QuestionService(sync_env.store, sync_env.orchestrator, max_question_chars=200)


@pytest.fixture
def tone_rules(sync_env) -> ToneRuleService:
    return ToneRuleService(sync_env.store, max_rule_chars=50)


class TestQuestionService:
    @pytest.mark.asyncio
    async def test_answer_becomes_rule_and_question_is_removed(self, sync_env, questions):
        recorded = await questions.record(OWNER, "What are the opening hours?", context="chat-42")

        result = await questions.answer(OWNER, recorded["id"], "9 to 5")

        assert result.ok
        expected = "Q: What are the opening hours?\nA: 9 to 5"
        assert [rule.content for rule in sync_env.store.list_rules(OWNER)] == [expected]
        assert await questions.list_questions(OWNER) == []
        blob = await sync_env.archive.get_blob(OWNER, snapshot_key(OWNER))
        assert blob == expected.encode("utf-8")

    @pytest.mark.asyncio
    async def test_answer_keeps_existing_rules(self, sync_env, questions):
        await sync_env.orchestrator.update_configuration(
            OWNER, ConfigurationDiff(rules_to_add=[RuleInput("be brief")])
        )
        recorded = await questions.record(OWNER, "Refunds?")

        await questions.answer(OWNER, recorded["id"], "Within 30 days")

        contents = [rule.content for rule in sync_env.store.list_rules(OWNER)]
        assert contents == ["be brief", answered_rule_content("Refunds?", "Within 30 days")]

    @pytest.mark.asyncio
    async def test_failed_update_keeps_question(self, sync_env, questions):
        recorded = await questions.record(OWNER, "Parking?")
        sync_env.store.try_mark_processing(OWNER, stale_after=timedelta(minutes=5))

        result = await questions.answer(OWNER, recorded["id"], "Behind the building")

        assert not result.ok
        assert result.failed_step == "guard"
        assert sync_env.store.list_rules(OWNER) == []
        assert [q["id"] for q in await questions.list_questions(OWNER)] == [recorded["id"]]

    @pytest.mark.asyncio
    async def test_other_owners_question_not_found(self, questions):
        recorded = await questions.record("someone-else", "Secret?")

        with pytest.raises(NotOwnedError):
            await questions.answer(OWNER, recorded["id"], "no")
        with pytest.raises(NotOwnedError):
            await questions.delete(OWNER, recorded["id"])

    @pytest.mark.asyncio
    async def test_blank_and_oversized_text_rejected(self, questions):
        with pytest.raises(ValidationError):
            await questions.record(OWNER, "   ")
        with pytest.raises(ValidationError):
            await questions.record(OWNER, "x" * 201)

        recorded = await questions.record(OWNER, "Why?")
        with pytest.raises(ValidationError):
            await questions.answer(OWNER, recorded["id"], "")

    @pytest.mark.asyncio
    async def test_listed_newest_first(self, questions):
        base = datetime(2024, 5, 1, 12, 0)
        await questions.record(OWNER, "first", asked_at=base)
        await questions.record(OWNER, "second", asked_at=base + timedelta(minutes=1))

        listed = await questions.list_questions(OWNER)

        assert [q["question"] for q in listed] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_discard_removes_question(self, questions):
        recorded = await questions.record(OWNER, "Off topic")

        await questions.delete(OWNER, recorded["id"])

        assert await questions.list_questions(OWNER) == []
        with pytest.raises(NotOwnedError):
            await questions.delete(OWNER, recorded["id"])


class TestToneRuleService:
    @pytest.mark.asyncio
    async def test_create_get_list_delete(self, tone_rules):
        created = await tone_rules.create_rule(OWNER, "Answer formally")

        assert await tone_rules.get_rule(OWNER, created["id"]) == created
        assert [rule["content"] for rule in await tone_rules.list_rules(OWNER)] == ["Answer formally"]

        await tone_rules.delete_rule(OWNER, created["id"])

        assert await tone_rules.list_rules(OWNER) == []
        with pytest.raises(NotOwnedError):
            await tone_rules.delete_rule(OWNER, created["id"])

    @pytest.mark.asyncio
    async def test_rules_are_owner_scoped(self, tone_rules):
        created = await tone_rules.create_rule("someone-else", "Be cheerful")

        with pytest.raises(NotOwnedError):
            await tone_rules.get_rule(OWNER, created["id"])
        with pytest.raises(NotOwnedError):
            await tone_rules.delete_rule(OWNER, created["id"])
        assert await tone_rules.list_rules(OWNER) == []

    @pytest.mark.asyncio
    async def test_content_validated(self, tone_rules):
        with pytest.raises(ValidationError):
            await tone_rules.create_rule(OWNER, "  ")
        with pytest.raises(ValidationError):
            await tone_rules.create_rule(OWNER, "x" * 51)

    @pytest.mark.asyncio
    async def test_tone_rules_stay_out_of_the_snapshot(self, sync_env, tone_rules):
        await tone_rules.create_rule(OWNER, "Use emoji")
        await sync_env.orchestrator.update_configuration(
            OWNER, ConfigurationDiff(rules_to_add=[RuleInput("X")])
        )

        assert await sync_env.archive.get_blob(OWNER, snapshot_key(OWNER)) == b"X"

    @pytest.mark.asyncio
    async def test_survive_store_reload(self, sync_env, tone_rules):
        created = await tone_rules.create_rule(OWNER, "Short answers")

        reloaded = MemoryStore(state_root=str(sync_env.store.state_root))

        assert reloaded.get_tone_rule(OWNER, created["id"]).content == "Short answers"
