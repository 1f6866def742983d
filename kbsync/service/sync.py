"""Update orchestration across the relational store, archive and vector index.

The three stores share no transaction. An update runs as a fixed sequence of
steps and stops at the first failure:

1. ``guard``        mark the owner in-progress, then consult the rate limiter
2. ``validate``     request limits, file types, names, quota; no writes
3. ``delete_obsolete`` archive blobs then vector tags of removed files
4. ``apply_diff``   relational deletes and inserts in one transaction
5. ``snapshot``     rebuild the knowledge snapshot and replace its blob
6. ``upload_files`` archive blobs for added files
7. ``invalidate_cache``

A failure before step 4 commits leaves every store as it was, except that
blobs already removed in step 3 stay removed. A failure after the commit
leaves the relational store ahead of the archive and index; the result is
flagged ``committed`` and ``Reconciler`` repairs the owner later.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, List, Optional

from kbsync.logging import get_logger
from kbsync.service.archive import ObjectArchive, file_blob_key, snapshot_key
from kbsync.service.cache import ConfigCache, config_cache_key
from kbsync.service.diff import AppliedDiff, ConfigurationDiff, DiffApplier
from kbsync.service.errors import (
    RateLimitedError,
    ServiceError,
    StoreFailure,
    UpdateInProgressError,
)
from kbsync.service.rate_limit import (
    UPDATE_ROUTE,
    RateDecision,
    RateLimiter,
    rate_limit_key,
)
from kbsync.service.snapshot import SNAPSHOT_CONTENT_TYPE, SnapshotBuilder
from kbsync.service.validation import UpdateValidator, ValidatedUpdate
from kbsync.service.vector_index import VectorIndex

logger = get_logger(__name__)


@dataclass
class SyncResult:
    ok: bool
    applied: Optional[AppliedDiff] = None
    error: Optional[ServiceError] = None
    failed_step: Optional[str] = None
    rate: Optional[RateDecision] = None
    snapshot_key: Optional[str] = None
    snapshot_bytes: int = 0
    uploaded_keys: List[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.applied is not None


class _StepFailed(Exception):
    def __init__(self, step: str, error: ServiceError) -> None:
        super().__init__(error.message)
        self.step = step
        self.error = error


class SynchronizationOrchestrator:
    def __init__(
        self,
        store: Any,
        archive: ObjectArchive,
        vector_index: VectorIndex,
        cache: ConfigCache,
        rate_limiter: RateLimiter,
        *,
        validator: UpdateValidator,
        snapshot_builder: SnapshotBuilder,
        guard_stale_after: timedelta = timedelta(minutes=5),
    ) -> None:
        self.store = store
        self.archive = archive
        self.vector_index = vector_index
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.snapshot_builder = snapshot_builder
        self.applier = DiffApplier(store)
        self.guard_stale_after = guard_stale_after

    async def update_configuration(self, owner_id: str, diff: ConfigurationDiff) -> SyncResult:
        log = logger.bind(owner_id=owner_id)
        try:
            marked = await asyncio.to_thread(
                self.store.try_mark_processing,
                owner_id,
                stale_after=self.guard_stale_after,
            )
        except Exception as exc:
            log.error("update_guard_failed", error=str(exc))
            return SyncResult(
                ok=False,
                error=StoreFailure("could not mark update in progress", store="relational"),
                failed_step="guard",
            )
        if not marked:
            log.info("configuration_update_rejected", reason="in_progress")
            return SyncResult(
                ok=False,
                error=UpdateInProgressError("an update for this owner is already in progress"),
                failed_step="guard",
            )

        result = SyncResult(ok=False)
        try:
            await self._run(owner_id, diff, result, log)
        except _StepFailed as failure:
            result.ok = False
            result.error = failure.error
            result.failed_step = failure.step
            if result.committed:
                log.error(
                    "configuration_update_inconsistent",
                    failed_step=failure.step,
                    store=failure.error.detail.get("store"),
                    error=failure.error.message,
                )
            else:
                log.info(
                    "configuration_update_failed",
                    failed_step=failure.step,
                    error_code=failure.error.error_code,
                    error=failure.error.message,
                )
        finally:
            try:
                await asyncio.to_thread(self.store.clear_processing, owner_id)
            except Exception as exc:
                # a stuck flag is reclaimed once it is older than guard_stale_after
                log.error("update_guard_clear_failed", error=str(exc))
        return result

    async def _run(self, owner_id: str, diff: ConfigurationDiff, result: SyncResult, log) -> None:
        decision = await self._step(
            "guard", "rate_limiter", result, self.rate_limiter.check,
            rate_limit_key(owner_id, UPDATE_ROUTE),
        )
        result.rate = decision
        if not decision.allowed:
            log.info("configuration_update_rejected", reason="rate_limited")
            raise _StepFailed(
                "guard",
                RateLimitedError(
                    "too many configuration updates",
                    retry_after=decision.retry_after,
                    remaining=decision.remaining,
                    limit=decision.limit,
                ),
            )

        validated: ValidatedUpdate = await self._step(
            "validate", "relational", result, asyncio.to_thread,
            self.validator.validate, owner_id, diff,
        )

        log.info("update_step", step="delete_obsolete", files=len(validated.files_to_delete))
        if diff.is_full_reset:
            await self._step(
                "delete_obsolete", "archive", result,
                self.archive.delete_all_under_prefix, owner_id,
            )
            await self._step(
                "delete_obsolete", "vector", result,
                self.vector_index.delete_namespace, owner_id,
            )
        else:
            for asset in validated.files_to_delete:
                key = file_blob_key(owner_id, asset.id, asset.name)
                await self._step(
                    "delete_obsolete", "archive", result,
                    self.archive.delete_blob, owner_id, key,
                )
                await self._step(
                    "delete_obsolete", "vector", result,
                    self.vector_index.delete_by_tag, owner_id, key,
                )

        log.info("update_step", step="apply_diff")
        applied: AppliedDiff = await self._step(
            "apply_diff", "relational", result, asyncio.to_thread,
            self.applier.apply, owner_id, diff, file_sizes=validated.file_sizes,
        )
        result.applied = applied

        if applied.changed:
            log.info("update_step", step="snapshot")
            await self._regenerate_snapshot(owner_id, result)

        log.info("update_step", step="upload_files", files=len(applied.inserted_files))
        for asset, data in zip(applied.inserted_files, validated.blobs):
            key = file_blob_key(owner_id, asset.id, asset.name)
            await self._step(
                "upload_files", "archive", result,
                self.archive.put_blob, owner_id, key, data, asset.content_type,
            )
            result.uploaded_keys.append(key)

        await self._step(
            "invalidate_cache", "cache", result,
            self.cache.remove, config_cache_key(owner_id),
        )

        result.ok = True
        log.info(
            "configuration_update_completed",
            rules_added=len(applied.inserted_rules),
            rules_deleted=len(applied.deleted_rules),
            files_added=len(applied.inserted_files),
            files_deleted=len(applied.deleted_files),
            snapshot_bytes=result.snapshot_bytes,
        )

    async def _regenerate_snapshot(self, owner_id: str, result: SyncResult) -> None:
        rules = await self._step(
            "snapshot", "relational", result, asyncio.to_thread,
            self.store.list_rules, owner_id,
        )
        files = await self._step(
            "snapshot", "relational", result, asyncio.to_thread,
            self.store.list_files, owner_id,
        )
        text = await asyncio.to_thread(self.snapshot_builder.build, rules, files)
        key = snapshot_key(owner_id)
        await self._step("snapshot", "archive", result, self.archive.delete_blob, owner_id, key)
        await self._step("snapshot", "vector", result, self.vector_index.delete_by_tag, owner_id, key)
        if text:
            data = text.encode("utf-8")
            await self._step(
                "snapshot", "archive", result,
                self.archive.put_blob, owner_id, key, data, SNAPSHOT_CONTENT_TYPE,
            )
            result.snapshot_key = key
            result.snapshot_bytes = len(data)

    async def _step(
        self,
        step: str,
        store: str,
        result: SyncResult,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Await one store call, turning any failure into ``_StepFailed``."""
        committed = result.committed
        try:
            return await func(*args, **kwargs)
        except StoreFailure as exc:
            raise _StepFailed(
                step,
                StoreFailure(exc.message, store=exc.store, committed=committed, detail=exc.detail),
            ) from exc
        except ServiceError as exc:
            raise _StepFailed(step, exc) from exc
        except Exception as exc:
            logger.error("update_step_failed", step=step, store=store, error=str(exc))
            raise _StepFailed(
                step,
                StoreFailure(
                    f"{store} call failed during {step}",
                    store=store,
                    committed=committed,
                    detail={"error": type(exc).__name__},
                ),
            ) from exc
