from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kbsync.service.diff import (
    ConfigurationDiff,
    FileInput,
    RuleInput,
    delete_selection_from,
)

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "not_found",
        "conflict",
        "duplicate_name",
        "update_in_progress",
        "rate_limited",
        "server_error",
        "store_failure",
    }
)

# base64 of a 10 MiB file, with headroom for a data-URL prefix
MAX_ENCODED_FILE_CHARS = 14 * 1024 * 1024


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RuleToAdd(BaseModel):
    content: str = Field(..., min_length=1)


class FileToAdd(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1, max_length=MAX_ENCODED_FILE_CHARS)
    size: Optional[int] = Field(default=None, ge=0)


class UpdateConfigurationRequest(BaseModel):
    """Body of ``PUT /v1/configuration``.

    A delete key that is absent or ``null`` deletes every owned row of that
    kind; an empty list deletes nothing.
    """

    model_config = ConfigDict(extra="forbid")

    rules_to_add: List[RuleToAdd] = Field(default_factory=list)
    rules_to_delete: Optional[List[str]] = None
    files_to_add: List[FileToAdd] = Field(default_factory=list)
    files_to_delete: Optional[List[str]] = None

    def to_diff(self) -> ConfigurationDiff:
        return ConfigurationDiff(
            rules_to_add=[RuleInput(content=rule.content) for rule in self.rules_to_add],
            rules_to_delete=delete_selection_from(self.rules_to_delete),
            files_to_add=[
                FileInput(
                    name=item.name,
                    content_type=item.content_type,
                    content=item.content,
                    size=item.size,
                )
                for item in self.files_to_add
            ],
            files_to_delete=delete_selection_from(self.files_to_delete),
        )


class RuleView(BaseModel):
    id: str
    content: str


class FileView(BaseModel):
    id: str
    name: str
    content_type: str
    size: int


class ConfigurationView(BaseModel):
    rules: List[RuleView] = Field(default_factory=list)
    files: List[FileView] = Field(default_factory=list)


class ConfigurationPage(ConfigurationView):
    skip: int
    take: int


class UpdateConfigurationResponse(BaseModel):
    added_rule_ids: List[str] = Field(default_factory=list)
    added_file_ids: List[str] = Field(default_factory=list)
    deleted_rule_ids: List[str] = Field(default_factory=list)
    deleted_file_ids: List[str] = Field(default_factory=list)
    snapshot_key: Optional[str] = None
    snapshot_bytes: int = 0


class ReconcileResponse(BaseModel):
    owner_id: str
    skipped: bool
    reuploaded: List[str]
    orphans_deleted: List[str]
    snapshot_replaced: bool
    snapshot_removed: bool
    errors: List[str]


class RuleDetailView(RuleView):
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ToneRuleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(..., min_length=1)


class ToneRuleView(BaseModel):
    id: str
    content: str
    created_at: Optional[str] = None


class QuestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(..., min_length=1)
    context: Optional[str] = None
    asked_at: Optional[datetime] = None


class QuestionView(BaseModel):
    id: str
    question: str
    context: Optional[str] = None
    asked_at: Optional[str] = None
    created_at: Optional[str] = None


class AnswerQuestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    answer: str = Field(..., min_length=1)


class AnswerQuestionResponse(BaseModel):
    question_id: str
    rule_id: str
    snapshot_key: Optional[str] = None
    snapshot_bytes: int = 0
