from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Response

from kbsync.api.schemas import (
    AnswerQuestionRequest,
    AnswerQuestionResponse,
    ConfigurationPage,
    ConfigurationView,
    Envelope,
    FileView,
    QuestionRequest,
    QuestionView,
    ReconcileResponse,
    RuleDetailView,
    ToneRuleRequest,
    ToneRuleView,
    UpdateConfigurationRequest,
    UpdateConfigurationResponse,
)
from kbsync.logging import get_correlation_id, get_logger
from kbsync.service.errors import RateLimitedError
from kbsync.service.rate_limit import RECONCILE_ROUTE, UPDATE_ROUTE, rate_limit_key
from kbsync.service.runtime import get_runtime
from kbsync.service.sync import SyncResult

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining")

    def __init__(self, limit: int, remaining: int):
        self.limit = limit
        self.remaining = remaining

    def as_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
        }

    def apply_headers(self, response: Response) -> None:
        for name, value in self.as_headers().items():
            response.headers[name] = value


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


async def get_owner(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> str:
    runtime = get_runtime()
    return runtime.sessions.resolve_owner(authorization, access_token)


async def _enforce_rate_limit(
    runtime, owner_id: str, route: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count one request against ``(owner_id, route)`` and apply headers.

    Raises:
        RateLimitedError: 429 once the owner has used the route's window
    """
    decision = await runtime.rate_limiter.check(rate_limit_key(owner_id, route))
    info = RateLimitInfo(decision.limit, decision.remaining)
    if not decision.allowed:
        logger.info("rate_limited", owner_id=owner_id, route=route, retry_after=decision.retry_after)
        raise RateLimitedError(
            "rate limit exceeded",
            retry_after=decision.retry_after,
            remaining=decision.remaining,
            limit=decision.limit,
        )
    if response is not None:
        info.apply_headers(response)
    return info


async def _update_rate_info(runtime, owner_id: str) -> RateLimitInfo:
    remaining = await runtime.rate_limiter.remaining_requests(
        rate_limit_key(owner_id, UPDATE_ROUTE)
    )
    return RateLimitInfo(runtime.rate_limiter.limit, remaining)


async def _finish_update(runtime, owner_id: str, result: SyncResult, response: Response) -> None:
    """Attach update-limit headers, raising the saga's error when it failed."""
    info = await _update_rate_info(runtime, owner_id)
    if not result.ok:
        error = result.error
        error.headers = {**(error.headers or {}), **info.as_headers()}
        raise error
    info.apply_headers(response)


# -- configuration ---------------------------------------------------------


@router.get("/configuration", response_model=Envelope, tags=["configuration"])
async def get_configuration(response: Response, owner_id: str = Depends(get_owner)):
    """Return the caller's rules and file metadata, served from cache when warm."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "configuration:read", response=response)
    view = await runtime.configuration.get_view(owner_id)
    return _ok(ConfigurationView.model_validate(view).model_dump())


@router.get("/configuration/page", response_model=Envelope, tags=["configuration"])
async def get_configuration_page(
    response: Response,
    skip: int = Query(0, ge=0, description="Rows to skip in each list"),
    take: Optional[int] = Query(None, ge=1, description="Rows to return from each list"),
    owner_id: str = Depends(get_owner),
):
    """Page through rules and files independently, oldest first."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "configuration:page", response=response)
    page = await runtime.configuration.get_page(owner_id, skip, take)
    return _ok(ConfigurationPage.model_validate(page).model_dump())


@router.get("/configuration/rules/{rule_id}", response_model=Envelope, tags=["configuration"])
async def get_configuration_rule(
    response: Response,
    rule_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "configuration:rule", response=response)
    rule = await runtime.configuration.get_rule(owner_id, rule_id)
    return _ok(RuleDetailView.model_validate(rule).model_dump())


@router.get("/configuration/files/{file_id}", response_model=Envelope, tags=["configuration"])
async def get_configuration_file(
    response: Response,
    file_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "configuration:file", response=response)
    meta = await runtime.configuration.get_file(owner_id, file_id)
    return _ok(FileView.model_validate(meta).model_dump())


@router.put("/configuration", response_model=Envelope, tags=["configuration"])
async def update_configuration(
    body: UpdateConfigurationRequest,
    response: Response,
    owner_id: str = Depends(get_owner),
):
    """Apply a diff of rules and files to the caller's configuration.

    The update limit is checked inside the saga, after the in-progress guard.

    Raises:
        400: If validation or the storage quota rejects the diff
        409: If a file name is taken or another update is running
        429: If the update rate limit is exceeded
        502: If the archive, vector index or database fails
    """
    runtime = get_runtime()
    result = await runtime.orchestrator.update_configuration(owner_id, body.to_diff())
    await _finish_update(runtime, owner_id, result, response)
    applied = result.applied
    payload = UpdateConfigurationResponse(
        added_rule_ids=[rule.id for rule in applied.inserted_rules],
        added_file_ids=[asset.id for asset in applied.inserted_files],
        deleted_rule_ids=[rule.id for rule in applied.deleted_rules],
        deleted_file_ids=[asset.id for asset in applied.deleted_files],
        snapshot_key=result.snapshot_key,
        snapshot_bytes=result.snapshot_bytes,
    )
    return _ok(payload.model_dump())


@router.post("/configuration/reconcile", response_model=Envelope, tags=["configuration"])
async def reconcile_configuration(response: Response, owner_id: str = Depends(get_owner)):
    """Repair the caller's archive blobs, snapshot and vector tags."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, RECONCILE_ROUTE, response=response)
    report = await runtime.reconciler.reconcile_owner(owner_id)
    return _ok(ReconcileResponse(**report.as_dict()).model_dump())


# -- tone rules ------------------------------------------------------------


@router.get("/tone-rules", response_model=Envelope, tags=["tone-rules"])
async def list_tone_rules(response: Response, owner_id: str = Depends(get_owner)):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "tone_rules:read", response=response)
    rules = await runtime.tone_rules.list_rules(owner_id)
    return _ok([ToneRuleView.model_validate(rule).model_dump() for rule in rules])


@router.post("/tone-rules", response_model=Envelope, status_code=201, tags=["tone-rules"])
async def create_tone_rule(
    body: ToneRuleRequest,
    response: Response,
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "tone_rules:write", response=response)
    rule = await runtime.tone_rules.create_rule(owner_id, body.content)
    return _ok(ToneRuleView.model_validate(rule).model_dump())


@router.get("/tone-rules/{rule_id}", response_model=Envelope, tags=["tone-rules"])
async def get_tone_rule(
    response: Response,
    rule_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "tone_rules:read", response=response)
    rule = await runtime.tone_rules.get_rule(owner_id, rule_id)
    return _ok(ToneRuleView.model_validate(rule).model_dump())


@router.delete("/tone-rules/{rule_id}", response_model=Envelope, tags=["tone-rules"])
async def delete_tone_rule(
    response: Response,
    rule_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "tone_rules:write", response=response)
    await runtime.tone_rules.delete_rule(owner_id, rule_id)
    return _ok({"id": rule_id, "deleted": True})


# -- unanswered questions --------------------------------------------------


@router.get("/questions", response_model=Envelope, tags=["questions"])
async def list_questions(response: Response, owner_id: str = Depends(get_owner)):
    """List the caller's unanswered questions, newest first."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "questions:read", response=response)
    rows = await runtime.questions.list_questions(owner_id)
    return _ok([QuestionView.model_validate(row).model_dump() for row in rows])


@router.post("/questions", response_model=Envelope, status_code=201, tags=["questions"])
async def record_question(
    body: QuestionRequest,
    response: Response,
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "questions:write", response=response)
    row = await runtime.questions.record(
        owner_id, body.question, context=body.context, asked_at=body.asked_at
    )
    return _ok(QuestionView.model_validate(row).model_dump())


@router.post("/questions/{question_id}/answer", response_model=Envelope, tags=["questions"])
async def answer_question(
    body: AnswerQuestionRequest,
    response: Response,
    question_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    """Store the question and answer as a knowledge rule, then drop the question.

    Counts against the configuration update limit.
    """
    runtime = get_runtime()
    result = await runtime.questions.answer(owner_id, question_id, body.answer)
    await _finish_update(runtime, owner_id, result, response)
    payload = AnswerQuestionResponse(
        question_id=question_id,
        rule_id=result.applied.inserted_rules[0].id,
        snapshot_key=result.snapshot_key,
        snapshot_bytes=result.snapshot_bytes,
    )
    return _ok(payload.model_dump())


@router.delete("/questions/{question_id}", response_model=Envelope, tags=["questions"])
async def discard_question(
    response: Response,
    question_id: str = Path(..., max_length=128),
    owner_id: str = Depends(get_owner),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, owner_id, "questions:write", response=response)
    await runtime.questions.delete(owner_id, question_id)
    return _ok({"id": question_id, "deleted": True})
