from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class KnowledgeRule:
    id: str
    owner_id: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class FileAsset:
    """Uploaded document row.

    ``content`` holds the base64 text exactly as it was submitted; the decoded
    bytes are what ends up in the object archive.
    """

    id: str
    owner_id: str
    name: str
    content_type: str
    size: int
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class OwnerConfiguration:
    """Owner root row carrying the advisory update flag."""

    owner_id: str
    is_processing: bool = False
    processing_started_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ToneRule:
    """Owner-scoped instruction about answer tone; not part of the snapshot."""

    id: str
    owner_id: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UnansweredQuestion:
    id: str
    owner_id: str
    question: str
    context: Optional[str] = None
    asked_at: datetime = field(default_factory=datetime.utcnow)
    created_at: datetime = field(default_factory=datetime.utcnow)
