from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from kbsync.config import get_settings, reset_settings_cache
from kbsync.logging import get_logger
from kbsync.service.archive import FilesystemArchive, MinioArchive
from kbsync.service.auth import SessionResolver
from kbsync.service.cache import InProcessCache, RedisConfigCache
from kbsync.service.configuration import ConfigurationService
from kbsync.service.extraction import TextExtractor
from kbsync.service.questions import QuestionService
from kbsync.service.rate_limit import RedisRateLimiter, SlidingWindowRateLimiter
from kbsync.service.reconcile import Reconciler
from kbsync.service.snapshot import SnapshotBuilder
from kbsync.service.sync import SynchronizationOrchestrator
from kbsync.service.tone_rules import ToneRuleService
from kbsync.service.validation import UpdateLimits, UpdateValidator
from kbsync.service.vector_index import HttpVectorIndex, MemoryVectorIndex
from kbsync.storage.memory import MemoryStore
from kbsync.storage.postgres import PostgresStore
from kbsync.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        fallback_allowed = settings.test_mode or settings.allow_redis_fallback_dev
        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"

        try:
            self.store = (
                MemoryStore(state_root=settings.state_root)
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                redis = RedisCache(settings.redis_url)
                redis.verify_connection()
                self.redis = redis
            except Exception as exc:
                redis_error = exc

        if self.redis is not None:
            self.cache = RedisConfigCache(self.redis)
            self.rate_limiter = RedisRateLimiter(
                self.redis,
                settings.update_rate_limit,
                settings.update_rate_limit_window_seconds,
            )
        else:
            if not fallback_allowed:
                raise RuntimeError(
                    "Redis is required for the shared configuration cache and update rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; the configuration cache "
                    "and rate limits are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = InProcessCache()
            self.rate_limiter = SlidingWindowRateLimiter(
                settings.update_rate_limit,
                settings.update_rate_limit_window_seconds,
            )

        if settings.archive_endpoint:
            archive = MinioArchive.from_settings(settings)
            archive.ensure_bucket()
            self.archive = archive
            logger.info(
                "runtime_archive_initialized",
                archive_type="minio",
                endpoint=settings.archive_endpoint,
                bucket=settings.archive_bucket,
            )
        elif fallback_allowed:
            logger.warning("archive_local_filesystem", root=settings.archive_root, mode=fallback_mode)
            self.archive = FilesystemArchive(settings.archive_root)
        else:
            raise RuntimeError(
                "ARCHIVE_ENDPOINT is required; set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                "to keep the archive on the local filesystem."
            )

        if settings.vector_index_host:
            self.vector_index = HttpVectorIndex(
                settings.vector_index_host,
                settings.vector_index_api_key,
                api_version=settings.vector_index_api_version,
                timeout_seconds=settings.vector_index_timeout_seconds,
            )
        elif fallback_allowed:
            logger.warning("vector_index_in_memory", mode=fallback_mode)
            self.vector_index = MemoryVectorIndex()
        else:
            raise RuntimeError(
                "VECTOR_INDEX_HOST is required; set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                "to use the in-memory index."
            )

        guard_stale_after = timedelta(seconds=settings.update_guard_stale_seconds)
        self.extractor = TextExtractor()
        self.snapshot_builder = SnapshotBuilder(self.extractor)
        self.validator = UpdateValidator(self.store, UpdateLimits.from_settings(settings))
        self.orchestrator = SynchronizationOrchestrator(
            self.store,
            self.archive,
            self.vector_index,
            self.cache,
            self.rate_limiter,
            validator=self.validator,
            snapshot_builder=self.snapshot_builder,
            guard_stale_after=guard_stale_after,
        )
        self.configuration = ConfigurationService(
            self.store,
            self.cache,
            ttl_seconds=settings.config_cache_ttl_seconds,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
        self.tone_rules = ToneRuleService(self.store, max_rule_chars=settings.max_rule_chars)
        self.questions = QuestionService(
            self.store,
            self.orchestrator,
            max_question_chars=settings.max_rule_chars,
        )
        self.reconciler = Reconciler(
            self.store,
            self.archive,
            self.vector_index,
            self.snapshot_builder,
            self.cache,
            guard_stale_after=guard_stale_after,
        )
        self.sessions = SessionResolver(settings)
        logger.info("runtime_init_completed", redis=self.redis is not None)

    async def close(self) -> None:
        await self.vector_index.close()
        if self.redis is not None:
            await self.redis.client.aclose()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                # called from inside a running loop; connections are dropped with the runtime
                logger.warning("runtime_close_skipped", error=str(exc))
        runtime = Runtime()
        return runtime
