import asyncio
import base64
import inspect
import os
import shutil
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

# Create temp directories for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="kbsync_test_")
_state_root = os.path.join(_test_tmp_dir, "state-root")
_archive_root = os.path.join(_test_tmp_dir, "archive")
os.environ.setdefault("STATE_ROOT", _state_root)
os.environ.setdefault("ARCHIVE_ROOT", _archive_root)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Always run on the in-process cache, rate limiter, vector index and local archive
os.environ["REDIS_URL"] = ""
os.environ.pop("VECTOR_INDEX_HOST", None)
os.environ.pop("ARCHIVE_ENDPOINT", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from kbsync.service.archive import FilesystemArchive  # noqa: E402
from kbsync.service.cache import InProcessCache  # noqa: E402
from kbsync.service.extraction import TextExtractor  # noqa: E402
from kbsync.service.rate_limit import SlidingWindowRateLimiter  # noqa: E402
from kbsync.service.reconcile import Reconciler  # noqa: E402
from kbsync.service.runtime import reset_runtime_for_tests  # noqa: E402
from kbsync.service.snapshot import SnapshotBuilder  # noqa: E402
from kbsync.service.sync import SynchronizationOrchestrator  # noqa: E402
from kbsync.service.validation import UpdateLimits, UpdateValidator  # noqa: E402
from kbsync.service.vector_index import MemoryVectorIndex  # noqa: E402
from kbsync.storage.memory import MemoryStore  # noqa: E402

MIB = 1024 * 1024


def _wipe_roots() -> None:
    for root in (os.environ["STATE_ROOT"], os.environ["ARCHIVE_ROOT"]):
        shutil.rmtree(root, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_roots()
    reset_runtime_for_tests()
    yield
    _wipe_roots()
    reset_runtime_for_tests()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def sync_env(tmp_path: Path):
    """Orchestrator wired to in-process collaborators under ``tmp_path``."""
    store = MemoryStore(state_root=str(tmp_path / "state"))
    archive = FilesystemArchive(str(tmp_path / "archive"))
    vector_index = MemoryVectorIndex()
    cache = InProcessCache()
    rate_limiter = SlidingWindowRateLimiter(100, 60)
    limits = UpdateLimits(
        storage_quota_bytes=10 * MIB,
        max_file_size_bytes=10 * MIB,
        max_rules_per_request=100,
        max_files_per_request=50,
        max_rule_chars=10000,
    )
    builder = SnapshotBuilder(TextExtractor())
    orchestrator = SynchronizationOrchestrator(
        store,
        archive,
        vector_index,
        cache,
        rate_limiter,
        validator=UpdateValidator(store, limits),
        snapshot_builder=builder,
        guard_stale_after=timedelta(minutes=5),
    )
    reconciler = Reconciler(
        store,
        archive,
        vector_index,
        builder,
        cache,
        guard_stale_after=timedelta(minutes=5),
    )
    return SimpleNamespace(
        store=store,
        archive=archive,
        vector_index=vector_index,
        cache=cache,
        rate_limiter=rate_limiter,
        limits=limits,
        orchestrator=orchestrator,
        reconciler=reconciler,
        builder=builder,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
