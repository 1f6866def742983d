"""Configuration diffs and the transactional diff applier.

A delete set is never a bare nullable list here: callers build a
``DeleteSelection`` (``DeleteAll``, ``DeleteNone`` or ``DeleteSpecific``)
once, at the boundary, with ``delete_selection_from``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import ContextManager, List, Optional, Protocol, Sequence, Tuple, Union

from kbsync.logging import get_logger
from kbsync.service.errors import ConflictError, DuplicateNameError
from kbsync.storage.common import generate_uuid, normalize_ids
from kbsync.storage.errors import ConstraintViolation
from kbsync.storage.models import FileAsset, KnowledgeRule

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeleteAll:
    """Delete every owned row of the kind."""


@dataclass(frozen=True)
class DeleteNone:
    """Delete nothing."""


@dataclass(frozen=True)
class DeleteSpecific:
    ids: Tuple[str, ...]


DeleteSelection = Union[DeleteAll, DeleteNone, DeleteSpecific]


def delete_selection_from(ids: Optional[Sequence[str]]) -> DeleteSelection:
    """Translate the wire form of a delete set.

    ``None`` means delete all, an empty list means delete nothing.
    """
    if ids is None:
        return DeleteAll()
    normalized = normalize_ids(ids) or []
    if not normalized:
        return DeleteNone()
    return DeleteSpecific(tuple(normalized))


@dataclass
class RuleInput:
    content: str
    id: Optional[str] = None


@dataclass
class FileInput:
    """File to add. ``content`` is base64 text; ``size`` is the declared byte size."""

    name: str
    content_type: str
    content: str
    size: Optional[int] = None
    id: Optional[str] = None


@dataclass
class ConfigurationDiff:
    rules_to_add: List[RuleInput] = field(default_factory=list)
    rules_to_delete: DeleteSelection = field(default_factory=DeleteNone)
    files_to_add: List[FileInput] = field(default_factory=list)
    files_to_delete: DeleteSelection = field(default_factory=DeleteNone)

    @property
    def is_full_reset(self) -> bool:
        return isinstance(self.rules_to_delete, DeleteAll) and isinstance(
            self.files_to_delete, DeleteAll
        )

    @property
    def is_noop(self) -> bool:
        return (
            not self.rules_to_add
            and not self.files_to_add
            and isinstance(self.rules_to_delete, DeleteNone)
            and isinstance(self.files_to_delete, DeleteNone)
        )


@dataclass
class AppliedDiff:
    deleted_rules: List[KnowledgeRule] = field(default_factory=list)
    deleted_files: List[FileAsset] = field(default_factory=list)
    inserted_rules: List[KnowledgeRule] = field(default_factory=list)
    inserted_files: List[FileAsset] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.deleted_rules
            or self.deleted_files
            or self.inserted_rules
            or self.inserted_files
        )


class StoreTransaction(Protocol):
    def file_names(self, owner_id: str) -> List[str]: ...

    def delete_all_rules(self, owner_id: str) -> List[KnowledgeRule]: ...

    def delete_rules(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]: ...

    def delete_all_files(self, owner_id: str) -> List[FileAsset]: ...

    def delete_files(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]: ...

    def insert_rule(self, rule: KnowledgeRule) -> KnowledgeRule: ...

    def insert_file(self, asset: FileAsset) -> FileAsset: ...


class TransactionalStore(Protocol):
    def transaction(self) -> ContextManager[StoreTransaction]: ...


class DiffApplier:
    """Applies a ``ConfigurationDiff`` to the relational store in one transaction."""

    def __init__(self, store: TransactionalStore) -> None:
        self.store = store

    def apply(
        self,
        owner_id: str,
        diff: ConfigurationDiff,
        *,
        file_sizes: Optional[Sequence[int]] = None,
        now: Optional[datetime] = None,
    ) -> AppliedDiff:
        """Delete then insert, all or nothing.

        ``file_sizes`` overrides the declared size of each added file, in
        order; validation supplies the decoded byte length here.
        """
        if not owner_id:
            raise ConstraintViolation("owner required", {"owner_id": owner_id})
        base = now or datetime.utcnow()
        result = AppliedDiff()
        try:
            with self.store.transaction() as tx:
                result.deleted_rules = self._delete(
                    owner_id, diff.rules_to_delete, tx.delete_all_rules, tx.delete_rules
                )
                result.deleted_files = self._delete(
                    owner_id, diff.files_to_delete, tx.delete_all_files, tx.delete_files
                )

                names = set(tx.file_names(owner_id))
                for item in diff.files_to_add:
                    if item.name in names:
                        raise DuplicateNameError(
                            "file name already exists",
                            detail={"name": item.name},
                        )
                    names.add(item.name)

                # microsecond offsets keep insertion order stable under (created_at, id)
                tick = 0
                for item in diff.rules_to_add:
                    stamp = base + timedelta(microseconds=tick)
                    tick += 1
                    rule = KnowledgeRule(
                        id=item.id or generate_uuid(),
                        owner_id=owner_id,
                        content=item.content,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                    result.inserted_rules.append(tx.insert_rule(rule))

                for index, item in enumerate(diff.files_to_add):
                    stamp = base + timedelta(microseconds=tick)
                    tick += 1
                    size = item.size or 0
                    if file_sizes is not None:
                        size = file_sizes[index]
                    asset = FileAsset(
                        id=item.id or generate_uuid(),
                        owner_id=owner_id,
                        name=item.name,
                        content_type=item.content_type,
                        size=size,
                        content=item.content,
                        created_at=stamp,
                    )
                    result.inserted_files.append(tx.insert_file(asset))
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        logger.info(
            "diff_applied",
            owner_id=owner_id,
            rules_deleted=len(result.deleted_rules),
            files_deleted=len(result.deleted_files),
            rules_added=len(result.inserted_rules),
            files_added=len(result.inserted_files),
        )
        return result

    @staticmethod
    def _delete(owner_id, selection: DeleteSelection, delete_all, delete_some):
        if isinstance(selection, DeleteAll):
            return delete_all(owner_id)
        if isinstance(selection, DeleteSpecific):
            return delete_some(owner_id, list(selection.ids))
        return []
