from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from kbsync.logging import get_logger
from kbsync.storage.common import (
    deserialize_datetime,
    files_size,
    rules_size,
    serialize_datetime,
    stable_order,
)
from kbsync.storage.errors import ConstraintViolation
from kbsync.storage.models import (
    FileAsset,
    KnowledgeRule,
    OwnerConfiguration,
    ToneRule,
    UnansweredQuestion,
)


class _MemoryTransaction:
    """Write view handed out by ``MemoryStore.transaction``.

    Only valid while the owning store's data lock is held.
    """

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store

    def list_rules(self, owner_id: str) -> List[KnowledgeRule]:
        return self._store._rules_for(owner_id)

    def list_files(self, owner_id: str) -> List[FileAsset]:
        return self._store._files_for(owner_id)

    def file_names(self, owner_id: str) -> List[str]:
        return [f.name for f in self._store._files_for(owner_id)]

    def delete_all_rules(self, owner_id: str) -> List[KnowledgeRule]:
        removed = self._store._rules_for(owner_id)
        for rule in removed:
            self._store.rules.pop(rule.id, None)
        return removed

    def delete_rules(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]:
        removed: List[KnowledgeRule] = []
        for rule_id in ids:
            rule = self._store.rules.get(rule_id)
            # rows owned by someone else are skipped, never reported
            if rule and rule.owner_id == owner_id:
                removed.append(self._store.rules.pop(rule_id))
        return removed

    def delete_all_files(self, owner_id: str) -> List[FileAsset]:
        removed = self._store._files_for(owner_id)
        for asset in removed:
            self._store.files.pop(asset.id, None)
        return removed

    def delete_files(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]:
        removed: List[FileAsset] = []
        for file_id in ids:
            asset = self._store.files.get(file_id)
            if asset and asset.owner_id == owner_id:
                removed.append(self._store.files.pop(file_id))
        return removed

    def insert_rule(self, rule: KnowledgeRule) -> KnowledgeRule:
        if not rule.owner_id:
            raise ConstraintViolation("rule owner required", {"rule_id": rule.id})
        if rule.id in self._store.rules:
            raise ConstraintViolation("rule id already exists", {"rule_id": rule.id})
        self._store._ensure_owner(rule.owner_id)
        self._store.rules[rule.id] = rule
        return rule

    def insert_file(self, asset: FileAsset) -> FileAsset:
        if not asset.owner_id:
            raise ConstraintViolation("file owner required", {"file_id": asset.id})
        if asset.id in self._store.files:
            raise ConstraintViolation("file id already exists", {"file_id": asset.id})
        self._store._ensure_owner(asset.owner_id)
        self._store.files[asset.id] = asset
        return asset


class MemoryStore:
    """In-memory relational store persisted to a JSON state file."""

    def __init__(self, state_root: str = "/tmp/kbsync") -> None:
        self.logger = get_logger(__name__)
        self.rules: Dict[str, KnowledgeRule] = {}
        self.files: Dict[str, FileAsset] = {}
        self.owners: Dict[str, OwnerConfiguration] = {}
        self.tone_rules: Dict[str, ToneRule] = {}
        self.questions: Dict[str, UnansweredQuestion] = {}
        # RLock so read helpers can be called from inside a transaction
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root)
        self.state_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path().parent.stat()

    @contextmanager
    def transaction(self) -> Iterator[_MemoryTransaction]:
        with self._data_lock:
            rules_before = dict(self.rules)
            files_before = dict(self.files)
            owners_before = dict(self.owners)
            try:
                yield _MemoryTransaction(self)
            except BaseException:
                self.rules = rules_before
                self.files = files_before
                self.owners = owners_before
                self.logger.warning("memory_transaction_rolled_back")
                raise
            self._persist_state()

    # -- reads -----------------------------------------------------------

    def _rules_for(self, owner_id: str) -> List[KnowledgeRule]:
        return stable_order(r for r in self.rules.values() if r.owner_id == owner_id)

    def _files_for(self, owner_id: str) -> List[FileAsset]:
        return stable_order(f for f in self.files.values() if f.owner_id == owner_id)

    def list_rules(self, owner_id: str) -> List[KnowledgeRule]:
        with self._data_lock:
            return self._rules_for(owner_id)

    def list_files(self, owner_id: str) -> List[FileAsset]:
        with self._data_lock:
            return self._files_for(owner_id)

    def get_rules_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]:
        with self._data_lock:
            found = [self.rules.get(rule_id) for rule_id in ids]
            return stable_order(r for r in found if r and r.owner_id == owner_id)

    def get_files_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]:
        with self._data_lock:
            found = [self.files.get(file_id) for file_id in ids]
            return stable_order(f for f in found if f and f.owner_id == owner_id)

    def list_rules_page(self, owner_id: str, skip: int, take: int) -> List[KnowledgeRule]:
        return self.list_rules(owner_id)[max(0, skip) : max(0, skip) + max(0, take)]

    def list_files_page(self, owner_id: str, skip: int, take: int) -> List[FileAsset]:
        return self.list_files(owner_id)[max(0, skip) : max(0, skip) + max(0, take)]

    def owner_storage_bytes(self, owner_id: str) -> int:
        with self._data_lock:
            return files_size(self._files_for(owner_id)) + rules_size(
                self._rules_for(owner_id)
            )

    def list_owner_ids(self) -> List[str]:
        with self._data_lock:
            owners = set(self.owners)
            owners.update(r.owner_id for r in self.rules.values())
            owners.update(f.owner_id for f in self.files.values())
            return sorted(owners)

    def get_owner(self, owner_id: str) -> Optional[OwnerConfiguration]:
        with self._data_lock:
            return self.owners.get(owner_id)

    # -- advisory update flag -------------------------------------------

    def _ensure_owner(self, owner_id: str) -> OwnerConfiguration:
        owner = self.owners.get(owner_id)
        if owner is None:
            owner = OwnerConfiguration(owner_id=owner_id)
            self.owners[owner_id] = owner
        return owner

    def try_mark_processing(self, owner_id: str, *, stale_after: timedelta) -> bool:
        with self._data_lock:
            owner = self._ensure_owner(owner_id)
            now = datetime.utcnow()
            if owner.is_processing:
                started = owner.processing_started_at
                if started and now - started < stale_after:
                    return False
                self.logger.warning(
                    "update_flag_reclaimed",
                    owner_id=owner_id,
                    started_at=serialize_datetime(started),
                )
            owner.is_processing = True
            owner.processing_started_at = now
            self._persist_state()
            return True

    def clear_processing(self, owner_id: str) -> None:
        with self._data_lock:
            owner = self.owners.get(owner_id)
            if owner is None:
                return
            owner.is_processing = False
            owner.processing_started_at = None
            self._persist_state()

    # -- tone rules ------------------------------------------------------

    def list_tone_rules(self, owner_id: str) -> List[ToneRule]:
        with self._data_lock:
            return stable_order(t for t in self.tone_rules.values() if t.owner_id == owner_id)

    def get_tone_rule(self, owner_id: str, rule_id: str) -> Optional[ToneRule]:
        with self._data_lock:
            rule = self.tone_rules.get(rule_id)
            return rule if rule and rule.owner_id == owner_id else None

    def insert_tone_rule(self, rule: ToneRule) -> ToneRule:
        with self._data_lock:
            if rule.id in self.tone_rules:
                raise ConstraintViolation("tone rule id already exists", {"rule_id": rule.id})
            self._ensure_owner(rule.owner_id)
            self.tone_rules[rule.id] = rule
            self._persist_state()
            return rule

    def delete_tone_rule(self, owner_id: str, rule_id: str) -> bool:
        with self._data_lock:
            if self.get_tone_rule(owner_id, rule_id) is None:
                return False
            del self.tone_rules[rule_id]
            self._persist_state()
            return True

    # -- unanswered questions --------------------------------------------

    def list_questions(self, owner_id: str) -> List[UnansweredQuestion]:
        with self._data_lock:
            owned = [q for q in self.questions.values() if q.owner_id == owner_id]
        return sorted(owned, key=lambda q: (q.asked_at, q.id), reverse=True)

    def get_question(self, owner_id: str, question_id: str) -> Optional[UnansweredQuestion]:
        with self._data_lock:
            question = self.questions.get(question_id)
            return question if question and question.owner_id == owner_id else None

    def insert_question(self, question: UnansweredQuestion) -> UnansweredQuestion:
        with self._data_lock:
            if question.id in self.questions:
                raise ConstraintViolation("question id already exists", {"question_id": question.id})
            self._ensure_owner(question.owner_id)
            self.questions[question.id] = question
            self._persist_state()
            return question

    def delete_question(self, owner_id: str, question_id: str) -> bool:
        with self._data_lock:
            if self.get_question(owner_id, question_id) is None:
                return False
            del self.questions[question_id]
            self._persist_state()
            return True

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "owners": [self._serialize_owner(o) for o in self.owners.values()],
            "rules": [self._serialize_rule(r) for r in self.rules.values()],
            "files": [self._serialize_file(f) for f in self.files.values()],
            "tone_rules": [self._serialize_tone_rule(t) for t in self.tone_rules.values()],
            "questions": [self._serialize_question(q) for q in self.questions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.owners = {
            o["owner_id"]: self._deserialize_owner(o) for o in data.get("owners", [])
        }
        self.rules = {r["id"]: self._deserialize_rule(r) for r in data.get("rules", [])}
        self.files = {f["id"]: self._deserialize_file(f) for f in data.get("files", [])}
        self.tone_rules = {
            t["id"]: self._deserialize_tone_rule(t) for t in data.get("tone_rules", [])
        }
        self.questions = {
            q["id"]: self._deserialize_question(q) for q in data.get("questions", [])
        }
        return True

    def _serialize_owner(self, owner: OwnerConfiguration) -> dict:
        return {
            "owner_id": owner.owner_id,
            "is_processing": owner.is_processing,
            "processing_started_at": serialize_datetime(owner.processing_started_at),
            "created_at": serialize_datetime(owner.created_at),
        }

    def _deserialize_owner(self, data: dict) -> OwnerConfiguration:
        return OwnerConfiguration(
            owner_id=data["owner_id"],
            is_processing=bool(data.get("is_processing", False)),
            processing_started_at=deserialize_datetime(data.get("processing_started_at")),
            created_at=deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )

    def _serialize_rule(self, rule: KnowledgeRule) -> dict:
        return {
            "id": rule.id,
            "owner_id": rule.owner_id,
            "content": rule.content,
            "created_at": serialize_datetime(rule.created_at),
            "updated_at": serialize_datetime(rule.updated_at),
        }

    def _deserialize_rule(self, data: dict) -> KnowledgeRule:
        return KnowledgeRule(
            id=data["id"],
            owner_id=data["owner_id"],
            content=data.get("content", ""),
            created_at=deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            updated_at=deserialize_datetime(data.get("updated_at")) or datetime.utcnow(),
        )

    def _serialize_file(self, asset: FileAsset) -> dict:
        return {
            "id": asset.id,
            "owner_id": asset.owner_id,
            "name": asset.name,
            "content_type": asset.content_type,
            "size": asset.size,
            "content": asset.content,
            "created_at": serialize_datetime(asset.created_at),
        }

    def _deserialize_file(self, data: dict) -> FileAsset:
        return FileAsset(
            id=data["id"],
            owner_id=data["owner_id"],
            name=data["name"],
            content_type=data.get("content_type", ""),
            size=int(data.get("size", 0)),
            content=data.get("content", ""),
            created_at=deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )

    def _serialize_tone_rule(self, rule: ToneRule) -> dict:
        return {
            "id": rule.id,
            "owner_id": rule.owner_id,
            "content": rule.content,
            "created_at": serialize_datetime(rule.created_at),
        }

    def _deserialize_tone_rule(self, data: dict) -> ToneRule:
        return ToneRule(
            id=data["id"],
            owner_id=data["owner_id"],
            content=data.get("content", ""),
            created_at=deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )

    def _serialize_question(self, question: UnansweredQuestion) -> dict:
        return {
            "id": question.id,
            "owner_id": question.owner_id,
            "question": question.question,
            "context": question.context,
            "asked_at": serialize_datetime(question.asked_at),
            "created_at": serialize_datetime(question.created_at),
        }

    def _deserialize_question(self, data: dict) -> UnansweredQuestion:
        return UnansweredQuestion(
            id=data["id"],
            owner_id=data["owner_id"],
            question=data.get("question", ""),
            context=data.get("context"),
            asked_at=deserialize_datetime(data.get("asked_at")) or datetime.utcnow(),
            created_at=deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )
