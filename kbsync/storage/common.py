"""Helpers shared by the memory and Postgres stores."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, TypeVar

from kbsync.storage.models import FileAsset, KnowledgeRule, ToneRule

T = TypeVar("T", KnowledgeRule, FileAsset, ToneRule)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utf8_size(text: Optional[str]) -> int:
    """Byte length of ``text`` once encoded as UTF-8."""
    if not text:
        return 0
    return len(text.encode("utf-8"))


def rules_size(rules: Iterable[KnowledgeRule]) -> int:
    return sum(utf8_size(rule.content) for rule in rules)


def files_size(files: Iterable[FileAsset]) -> int:
    return sum(max(0, int(f.size or 0)) for f in files)


def stable_order(rows: Iterable[T]) -> List[T]:
    """Order rows by creation time, breaking ties by id.

    Snapshot assembly and pagination both rely on this order being
    reproducible across stores.
    """
    return sorted(rows, key=lambda row: (row.created_at, row.id))


def normalize_ids(ids: Optional[Sequence[Any]]) -> Optional[List[str]]:
    if ids is None:
        return None
    seen: set[str] = set()
    normalized: List[str] = []
    for raw in ids:
        value = str(raw).strip()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None

