from __future__ import annotations

import asyncio
import io
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol

import urllib3
from minio import Minio
from minio.error import MinioException, S3Error

from kbsync.logging import get_logger
from kbsync.service.errors import StoreFailure
from kbsync.service.fs import (
    PathTraversalError,
    is_safe_owner_id,
    safe_join,
    sanitize_file_name,
)

SNAPSHOT_SLOT = "knowledge-snapshot"
_META_DIR = ".meta"


def owner_prefix(owner_id: str) -> str:
    return f"{owner_id}/"


def snapshot_key(owner_id: str) -> str:
    return f"{owner_prefix(owner_id)}{SNAPSHOT_SLOT}"


def file_blob_key(owner_id: str, file_id: str, file_name: str) -> str:
    return f"{owner_prefix(owner_id)}{file_id}_{sanitize_file_name(file_name)}"


def _require_safe_owner(owner_id: str) -> None:
    if not is_safe_owner_id(owner_id):
        raise StoreFailure("invalid owner id for archive", store="archive")


def _require_owned_key(owner_id: str, key: str) -> None:
    _require_safe_owner(owner_id)
    if not key.startswith(owner_prefix(owner_id)):
        raise StoreFailure(
            "archive key outside owner prefix",
            store="archive",
            detail={"key": key},
        )


class ObjectArchive(Protocol):
    async def put_blob(self, owner_id: str, key: str, data: bytes, content_type: str) -> None: ...

    async def get_blob(self, owner_id: str, key: str) -> Optional[bytes]: ...

    async def delete_blob(self, owner_id: str, key: str) -> None: ...

    async def delete_all_under_prefix(self, owner_id: str) -> List[str]: ...

    async def list_keys_under_prefix(self, owner_id: str) -> List[str]: ...

    def verify_connection(self) -> None: ...


class FilesystemArchive:
    """Object archive laid out as ``{root}/{owner_id}/{blob}`` on local disk.

    Used under TEST_MODE and local development when no bucket is configured.

    Content types live beside the blobs under ``{root}/.meta``. Deletes of
    absent keys succeed; puts overwrite.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)

    def verify_connection(self) -> None:
        if not os.access(self.root, os.W_OK):
            raise StoreFailure("archive root not writable", store="archive")

    def _owner_dir(self, owner_id: str) -> Path:
        _require_safe_owner(owner_id)
        try:
            return safe_join(self.root, owner_id)
        except PathTraversalError as exc:
            raise StoreFailure(str(exc), store="archive") from exc

    def _blob_path(self, owner_id: str, key: str) -> Path:
        _require_owned_key(owner_id, key)
        owner_dir = self._owner_dir(owner_id)
        try:
            return safe_join(owner_dir, key[len(owner_id) + 1 :])
        except PathTraversalError as exc:
            raise StoreFailure(str(exc), store="archive", detail={"key": key}) from exc

    def _meta_path(self, key: str) -> Path:
        return safe_join(self.root, f"{_META_DIR}/{key}.json")

    # -- blocking helpers ------------------------------------------------

    def _write(self, path: Path, meta_path: Path, data: bytes, content_type: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".upload_")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({"content_type": content_type, "size": len(data)}))

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _list(self, owner_dir: Path, owner_id: str) -> List[str]:
        if not owner_dir.exists():
            return []
        keys = []
        for entry in sorted(owner_dir.rglob("*")):
            if entry.is_file() and not entry.name.startswith(".upload_"):
                keys.append(f"{owner_id}/{entry.relative_to(owner_dir).as_posix()}")
        return keys

    # -- archive operations ----------------------------------------------

    async def put_blob(self, owner_id: str, key: str, data: bytes, content_type: str) -> None:
        path = self._blob_path(owner_id, key)
        try:
            await asyncio.to_thread(self._write, path, self._meta_path(key), data, content_type)
        except OSError as exc:
            self.logger.error("archive_put_failed", owner_id=owner_id, key=key, error=str(exc))
            raise StoreFailure("archive upload failed", store="archive", detail={"key": key}) from exc
        self.logger.info("archive_put", owner_id=owner_id, key=key, size=len(data))

    async def get_blob(self, owner_id: str, key: str) -> Optional[bytes]:
        path = self._blob_path(owner_id, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreFailure("archive read failed", store="archive", detail={"key": key}) from exc

    async def delete_blob(self, owner_id: str, key: str) -> None:
        path = self._blob_path(owner_id, key)
        try:
            existed = await asyncio.to_thread(self._unlink, path)
            await asyncio.to_thread(self._unlink, self._meta_path(key))
        except OSError as exc:
            self.logger.error("archive_delete_failed", owner_id=owner_id, key=key, error=str(exc))
            raise StoreFailure("archive delete failed", store="archive", detail={"key": key}) from exc
        self.logger.info("archive_delete", owner_id=owner_id, key=key, existed=existed)

    async def delete_all_under_prefix(self, owner_id: str) -> List[str]:
        owner_dir = self._owner_dir(owner_id)
        try:
            keys = await asyncio.to_thread(self._list, owner_dir, owner_id)
            await asyncio.to_thread(shutil.rmtree, owner_dir, True)
            meta_dir = safe_join(self.root, f"{_META_DIR}/{owner_id}")
            await asyncio.to_thread(shutil.rmtree, meta_dir, True)
        except OSError as exc:
            self.logger.error("archive_prefix_delete_failed", owner_id=owner_id, error=str(exc))
            raise StoreFailure("archive prefix delete failed", store="archive") from exc
        if owner_dir.exists():
            raise StoreFailure("archive prefix delete incomplete", store="archive")
        self.logger.info("archive_prefix_deleted", owner_id=owner_id, keys=len(keys))
        return keys

    async def list_keys_under_prefix(self, owner_id: str) -> List[str]:
        owner_dir = self._owner_dir(owner_id)
        try:
            return await asyncio.to_thread(self._list, owner_dir, owner_id)
        except OSError as exc:
            raise StoreFailure("archive listing failed", store="archive") from exc


# transport failures surface from urllib3 rather than as MinioException
_MINIO_ERRORS = (MinioException, urllib3.exceptions.HTTPError, OSError)
_MISSING_KEY_CODES = frozenset({"NoSuchKey", "NoSuchObject"})


def _s3_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, S3Error):
        return getattr(exc, "code", None)
    return None


class MinioArchive:
    """Object archive in one S3-compatible bucket keyed ``{owner_id}/{blob}``.

    The MinIO client is synchronous, so every call runs in a worker thread.
    S3 deletes of absent objects succeed, which keeps ``delete_blob`` and
    ``delete_all_under_prefix`` safe to repeat.
    """

    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings) -> "MinioArchive":
        client = Minio(
            settings.archive_endpoint,
            access_key=settings.archive_access_key,
            secret_key=settings.archive_secret_key,
            secure=settings.archive_secure,
            region=settings.archive_region,
        )
        return cls(client, settings.archive_bucket)

    def ensure_bucket(self) -> None:
        try:
            if not self.client.bucket_exists(bucket_name=self.bucket):
                self.client.make_bucket(bucket_name=self.bucket)
                self.logger.info("archive_bucket_created", bucket=self.bucket)
        except _MINIO_ERRORS as exc:
            self.logger.error(
                "archive_bucket_check_failed",
                bucket=self.bucket,
                error_code=_s3_code(exc),
                error_type=type(exc).__name__,
            )
            raise StoreFailure("archive bucket unavailable", store="archive") from exc

    def verify_connection(self) -> None:
        try:
            exists = self.client.bucket_exists(bucket_name=self.bucket)
        except _MINIO_ERRORS as exc:
            raise StoreFailure("archive unreachable", store="archive") from exc
        if not exists:
            raise StoreFailure("archive bucket missing", store="archive", detail={"bucket": self.bucket})

    # -- blocking helpers ------------------------------------------------

    def _put(self, key: str, data: bytes, content_type: str) -> None:
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type or "application/octet-stream",
        )

    def _get(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(bucket_name=self.bucket, object_name=key)
        except S3Error as exc:
            if _s3_code(exc) in _MISSING_KEY_CODES:
                return None
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def _remove(self, key: str) -> None:
        try:
            self.client.remove_object(bucket_name=self.bucket, object_name=key)
        except S3Error as exc:
            if _s3_code(exc) not in _MISSING_KEY_CODES:
                raise

    def _list(self, owner_id: str) -> List[str]:
        objects = self.client.list_objects(
            bucket_name=self.bucket, prefix=owner_prefix(owner_id), recursive=True
        )
        return sorted(obj.object_name for obj in objects if not obj.is_dir)

    def _remove_prefix(self, owner_id: str) -> List[str]:
        keys = self._list(owner_id)
        for key in keys:
            self._remove(key)
        return keys

    def _failure(self, event: str, message: str, exc: BaseException, **fields) -> StoreFailure:
        self.logger.error(
            event,
            bucket=self.bucket,
            error_code=_s3_code(exc),
            error_type=type(exc).__name__,
            **fields,
        )
        detail = {"key": fields["key"]} if "key" in fields else None
        return StoreFailure(message, store="archive", detail=detail)

    # -- archive operations ----------------------------------------------

    async def put_blob(self, owner_id: str, key: str, data: bytes, content_type: str) -> None:
        _require_owned_key(owner_id, key)
        try:
            await asyncio.to_thread(self._put, key, data, content_type)
        except _MINIO_ERRORS as exc:
            raise self._failure(
                "archive_put_failed", "archive upload failed", exc, owner_id=owner_id, key=key
            ) from exc
        self.logger.info("archive_put", owner_id=owner_id, key=key, size=len(data))

    async def get_blob(self, owner_id: str, key: str) -> Optional[bytes]:
        _require_owned_key(owner_id, key)
        try:
            return await asyncio.to_thread(self._get, key)
        except _MINIO_ERRORS as exc:
            raise self._failure(
                "archive_get_failed", "archive read failed", exc, owner_id=owner_id, key=key
            ) from exc

    async def delete_blob(self, owner_id: str, key: str) -> None:
        _require_owned_key(owner_id, key)
        try:
            await asyncio.to_thread(self._remove, key)
        except _MINIO_ERRORS as exc:
            raise self._failure(
                "archive_delete_failed", "archive delete failed", exc, owner_id=owner_id, key=key
            ) from exc
        self.logger.info("archive_delete", owner_id=owner_id, key=key)

    async def delete_all_under_prefix(self, owner_id: str) -> List[str]:
        _require_safe_owner(owner_id)
        try:
            keys = await asyncio.to_thread(self._remove_prefix, owner_id)
        except _MINIO_ERRORS as exc:
            raise self._failure(
                "archive_prefix_delete_failed", "archive prefix delete failed", exc, owner_id=owner_id
            ) from exc
        self.logger.info("archive_prefix_deleted", owner_id=owner_id, keys=len(keys))
        return keys

    async def list_keys_under_prefix(self, owner_id: str) -> List[str]:
        _require_safe_owner(owner_id)
        try:
            return await asyncio.to_thread(self._list, owner_id)
        except _MINIO_ERRORS as exc:
            raise self._failure(
                "archive_list_failed", "archive listing failed", exc, owner_id=owner_id
            ) from exc
