from __future__ import annotations

from typing import Iterable, Protocol

from kbsync.logging import get_logger
from kbsync.service.errors import ValidationError
from kbsync.service.extraction import ExtractionError
from kbsync.service.validation import decode_file_content
from kbsync.storage.common import stable_order
from kbsync.storage.models import FileAsset, KnowledgeRule

logger = get_logger(__name__)

SNAPSHOT_SEPARATOR = "\n\n"
SNAPSHOT_CONTENT_TYPE = "text/plain"


class Extractor(Protocol):
    def extract(self, data: bytes, content_type: str, file_name: str) -> str: ...


class SnapshotBuilder:
    """Assembles the knowledge snapshot: rule contents, then extracted file texts.

    Both groups are taken in creation order; blank contributions are skipped
    so a single rule ``"X"`` yields exactly ``"X"``.
    """

    def __init__(self, extractor: Extractor) -> None:
        self.extractor = extractor

    def file_text(self, asset: FileAsset) -> str:
        try:
            data = decode_file_content(asset.content)
            return self.extractor.extract(data, asset.content_type, asset.name)
        except (ExtractionError, ValidationError) as exc:
            logger.warning(
                "snapshot_extraction_failed",
                owner_id=asset.owner_id,
                file_id=asset.id,
                error=str(exc),
            )
            return ""

    def build(self, rules: Iterable[KnowledgeRule], files: Iterable[FileAsset]) -> str:
        parts = [rule.content for rule in stable_order(rules) if rule.content.strip()]
        for asset in stable_order(files):
            text = self.file_text(asset)
            if text.strip():
                parts.append(text)
        return SNAPSHOT_SEPARATOR.join(parts)
