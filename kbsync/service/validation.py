from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Protocol, Sequence

from kbsync.logging import get_logger
from kbsync.service.diff import (
    ConfigurationDiff,
    DeleteAll,
    DeleteSpecific,
)
from kbsync.service.errors import DuplicateNameError, ValidationError
from kbsync.storage.common import files_size, rules_size, utf8_size
from kbsync.storage.models import FileAsset, KnowledgeRule

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = frozenset({".txt", ".pdf", ".doc", ".docx", ".rtf"})
ALLOWED_CONTENT_TYPES = frozenset(
    {
        "text/plain",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/rtf",
    }
)


def validate_file_type(name: str, content_type: str, size: int, *, max_size: int) -> Optional[str]:
    """Return a rejection reason for the file, or ``None`` when it is acceptable."""
    if not name or not name.strip():
        return "file name is required"
    if not content_type or not content_type.strip():
        return "content type is required"
    extension = PurePosixPath(name.strip().lower()).suffix
    if extension not in ALLOWED_EXTENSIONS:
        return f"file extension '{extension or name}' is not allowed"
    # parameters such as "; charset=utf-8" do not affect the type check
    base_type = content_type.split(";", 1)[0].strip().lower()
    if base_type not in ALLOWED_CONTENT_TYPES:
        return f"content type '{content_type}' is not allowed"
    if size < 0:
        return "file size must not be negative"
    if size > max_size:
        return f"file exceeds the maximum size of {max_size} bytes"
    return None


def decode_file_content(content: str) -> bytes:
    """Decode base64 file content, accepting an optional data-URL prefix."""
    if not content or not content.strip():
        raise ValidationError("file content is required")
    payload = content.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("file content is not valid base64") from exc


class OwnerReader(Protocol):
    def list_files(self, owner_id: str) -> List[FileAsset]: ...

    def get_files_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]: ...

    def get_rules_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]: ...

    def list_rules(self, owner_id: str) -> List[KnowledgeRule]: ...

    def owner_storage_bytes(self, owner_id: str) -> int: ...


@dataclass
class ValidatedUpdate:
    """Outcome of validation: decoded blobs and resolved deletions."""

    diff: ConfigurationDiff
    blobs: List[bytes] = field(default_factory=list)
    file_sizes: List[int] = field(default_factory=list)
    files_to_delete: List[FileAsset] = field(default_factory=list)
    resulting_bytes: int = 0


@dataclass
class UpdateLimits:
    storage_quota_bytes: int
    max_file_size_bytes: int
    max_rules_per_request: int
    max_files_per_request: int
    max_rule_chars: int

    @classmethod
    def from_settings(cls, settings) -> "UpdateLimits":
        return cls(
            storage_quota_bytes=settings.storage_quota_bytes,
            max_file_size_bytes=settings.max_file_size_bytes,
            max_rules_per_request=settings.max_rules_per_request,
            max_files_per_request=settings.max_files_per_request,
            max_rule_chars=settings.max_rule_chars,
        )


class UpdateValidator:
    """Checks an update against request limits, file rules, names and quota.

    Runs before any store is written; every failure raises a ``ServiceError``.
    """

    def __init__(self, store: OwnerReader, limits: UpdateLimits) -> None:
        self.store = store
        self.limits = limits

    def validate(self, owner_id: str, diff: ConfigurationDiff) -> ValidatedUpdate:
        self._check_counts(diff)
        self._check_rules(diff)
        blobs, sizes = self._check_files(diff)

        files_to_delete = self._resolve_files(owner_id, diff)
        rules_to_delete = self._resolve_rules(owner_id, diff)
        self._check_names(owner_id, diff, files_to_delete)

        current = self.store.owner_storage_bytes(owner_id)
        removed = files_size(files_to_delete) + rules_size(rules_to_delete)
        added = sum(sizes) + sum(utf8_size(rule.content) for rule in diff.rules_to_add)
        resulting = max(0, current - removed) + added
        if resulting > self.limits.storage_quota_bytes:
            logger.info(
                "storage_quota_rejected",
                owner_id=owner_id,
                current_bytes=current,
                resulting_bytes=resulting,
                quota_bytes=self.limits.storage_quota_bytes,
            )
            raise ValidationError(
                "storage quota exceeded",
                detail={
                    "quota_bytes": self.limits.storage_quota_bytes,
                    "resulting_bytes": resulting,
                },
            )
        return ValidatedUpdate(
            diff=diff,
            blobs=blobs,
            file_sizes=sizes,
            files_to_delete=files_to_delete,
            resulting_bytes=resulting,
        )

    def _check_counts(self, diff: ConfigurationDiff) -> None:
        limits = self.limits
        if len(diff.rules_to_add) > limits.max_rules_per_request:
            raise ValidationError(
                f"at most {limits.max_rules_per_request} rules may be added per request"
            )
        if len(diff.files_to_add) > limits.max_files_per_request:
            raise ValidationError(
                f"at most {limits.max_files_per_request} files may be added per request"
            )
        if isinstance(diff.rules_to_delete, DeleteSpecific) and (
            len(diff.rules_to_delete.ids) > limits.max_rules_per_request
        ):
            raise ValidationError(
                f"at most {limits.max_rules_per_request} rule ids may be deleted per request"
            )
        if isinstance(diff.files_to_delete, DeleteSpecific) and (
            len(diff.files_to_delete.ids) > limits.max_files_per_request
        ):
            raise ValidationError(
                f"at most {limits.max_files_per_request} file ids may be deleted per request"
            )

    def _check_rules(self, diff: ConfigurationDiff) -> None:
        for index, rule in enumerate(diff.rules_to_add):
            if not rule.content or not rule.content.strip():
                raise ValidationError("rule content is required", detail={"index": index})
            if len(rule.content) > self.limits.max_rule_chars:
                raise ValidationError(
                    f"rule content exceeds {self.limits.max_rule_chars} characters",
                    detail={"index": index},
                )

    def _check_files(self, diff: ConfigurationDiff) -> tuple[List[bytes], List[int]]:
        blobs: List[bytes] = []
        sizes: List[int] = []
        for index, item in enumerate(diff.files_to_add):
            declared = item.size if item.size is not None else 0
            reason = validate_file_type(
                item.name,
                item.content_type,
                declared,
                max_size=self.limits.max_file_size_bytes,
            )
            if reason:
                raise ValidationError(reason, detail={"index": index, "name": item.name})
            data = decode_file_content(item.content)
            if item.size is not None and item.size != len(data):
                raise ValidationError(
                    "declared size does not match file content",
                    detail={"index": index, "name": item.name},
                )
            if len(data) > self.limits.max_file_size_bytes:
                raise ValidationError(
                    f"file exceeds the maximum size of {self.limits.max_file_size_bytes} bytes",
                    detail={"index": index, "name": item.name},
                )
            blobs.append(data)
            sizes.append(len(data))
        return blobs, sizes

    def _resolve_files(self, owner_id: str, diff: ConfigurationDiff) -> List[FileAsset]:
        selection = diff.files_to_delete
        if isinstance(selection, DeleteAll):
            return self.store.list_files(owner_id)
        if isinstance(selection, DeleteSpecific):
            return self.store.get_files_by_ids(owner_id, list(selection.ids))
        return []

    def _resolve_rules(self, owner_id: str, diff: ConfigurationDiff) -> List[KnowledgeRule]:
        selection = diff.rules_to_delete
        if isinstance(selection, DeleteAll):
            return self.store.list_rules(owner_id)
        if isinstance(selection, DeleteSpecific):
            return self.store.get_rules_by_ids(owner_id, list(selection.ids))
        return []

    def _check_names(
        self, owner_id: str, diff: ConfigurationDiff, files_to_delete: List[FileAsset]
    ) -> None:
        if not diff.files_to_add:
            return
        leaving = {asset.id for asset in files_to_delete}
        taken: Dict[str, str] = {
            asset.name: asset.id
            for asset in self.store.list_files(owner_id)
            if asset.id not in leaving
        }
        seen: set[str] = set()
        for item in diff.files_to_add:
            if item.name in taken:
                raise DuplicateNameError(
                    "file name already exists",
                    detail={"name": item.name, "existing_id": taken[item.name]},
                )
            if item.name in seen:
                raise DuplicateNameError(
                    "file name repeated in request", detail={"name": item.name}
                )
            seen.add(item.name)
