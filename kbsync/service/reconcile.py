"""Out-of-band repair of the archive and vector index from relational truth.

Run after an update reported a committed failure, or periodically. The pass
is idempotent: a consistent owner produces an empty report.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List

from kbsync.logging import get_logger
from kbsync.service.archive import ObjectArchive, file_blob_key, snapshot_key
from kbsync.service.cache import ConfigCache, config_cache_key
from kbsync.service.errors import ServiceError, ValidationError
from kbsync.service.snapshot import SNAPSHOT_CONTENT_TYPE, SnapshotBuilder
from kbsync.service.validation import decode_file_content
from kbsync.service.vector_index import VectorIndex
from kbsync.storage.models import FileAsset

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    owner_id: str
    skipped: bool = False
    reuploaded: List[str] = field(default_factory=list)
    orphans_deleted: List[str] = field(default_factory=list)
    snapshot_replaced: bool = False
    snapshot_removed: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.reuploaded
            or self.orphans_deleted
            or self.snapshot_replaced
            or self.snapshot_removed
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "skipped": self.skipped,
            "reuploaded": list(self.reuploaded),
            "orphans_deleted": list(self.orphans_deleted),
            "snapshot_replaced": self.snapshot_replaced,
            "snapshot_removed": self.snapshot_removed,
            "errors": list(self.errors),
        }


class Reconciler:
    def __init__(
        self,
        store: Any,
        archive: ObjectArchive,
        vector_index: VectorIndex,
        snapshot_builder: SnapshotBuilder,
        cache: ConfigCache,
        *,
        guard_stale_after: timedelta = timedelta(minutes=5),
    ) -> None:
        self.store = store
        self.archive = archive
        self.vector_index = vector_index
        self.snapshot_builder = snapshot_builder
        self.cache = cache
        self.guard_stale_after = guard_stale_after

    async def reconcile_owner(self, owner_id: str) -> ReconcileReport:
        report = ReconcileReport(owner_id=owner_id)
        marked = await asyncio.to_thread(
            self.store.try_mark_processing, owner_id, stale_after=self.guard_stale_after
        )
        if not marked:
            report.skipped = True
            logger.info("reconcile_skipped", owner_id=owner_id, reason="update_in_progress")
            return report
        try:
            await self._reconcile(owner_id, report)
        finally:
            await asyncio.to_thread(self.store.clear_processing, owner_id)
        logger.info("reconcile_owner_completed", **report.as_dict())
        return report

    async def _reconcile(self, owner_id: str, report: ReconcileReport) -> None:
        rules = await asyncio.to_thread(self.store.list_rules, owner_id)
        files = await asyncio.to_thread(self.store.list_files, owner_id)
        present = set(await self.archive.list_keys_under_prefix(owner_id))

        expected: Dict[str, FileAsset] = {
            file_blob_key(owner_id, asset.id, asset.name): asset for asset in files
        }
        for key, asset in expected.items():
            if key in present:
                continue
            try:
                data = decode_file_content(asset.content)
            except ValidationError as exc:
                report.errors.append(f"{asset.id}: {exc.message}")
                continue
            await self.archive.put_blob(owner_id, key, data, asset.content_type)
            report.reuploaded.append(key)

        slot = snapshot_key(owner_id)
        text = await asyncio.to_thread(self.snapshot_builder.build, rules, files)
        desired = text.encode("utf-8") if text else None
        current = await self.archive.get_blob(owner_id, slot) if slot in present else None
        if desired != current:
            await self.archive.delete_blob(owner_id, slot)
            await self.vector_index.delete_by_tag(owner_id, slot)
            if desired:
                await self.archive.put_blob(owner_id, slot, desired, SNAPSHOT_CONTENT_TYPE)
                report.snapshot_replaced = True
            else:
                report.snapshot_removed = True

        for key in sorted(present - set(expected) - {slot}):
            await self.archive.delete_blob(owner_id, key)
            await self.vector_index.delete_by_tag(owner_id, key)
            report.orphans_deleted.append(key)

        if report.changed:
            await self.cache.remove(config_cache_key(owner_id))

    async def reconcile_all(self) -> List[ReconcileReport]:
        owners = await asyncio.to_thread(self.store.list_owner_ids)
        reports = []
        for owner_id in owners:
            try:
                reports.append(await self.reconcile_owner(owner_id))
            except ServiceError as exc:
                logger.error("reconcile_owner_failed", owner_id=owner_id, error=exc.message)
                reports.append(ReconcileReport(owner_id=owner_id, errors=[exc.message]))
        return reports
