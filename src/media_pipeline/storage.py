"""Storage uploader: persists generated variants under deterministic keys.

Two object store backends are provided:
- LocalObjectStore: a directory per bucket, atomic temp-file + rename writes
- GCSObjectStore: Google Cloud Storage via google-cloud-storage

Keys are always ``{job_id}/{variant_type}.{format}``, so re-uploading a
variant overwrites the same object and retries never leave duplicates.
"""

import errno
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import StorageQuotaExceeded, StorageUnavailable
from .models import StorageConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]  # (bytes_written, total_bytes)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
}

CHUNK_SIZE = 1024 * 1024


def storage_key(job_id: str, variant_type: str, fmt: str) -> str:
    """Deterministic object key for one variant of one job."""
    return f"{job_id}/{variant_type}.{fmt}"


class ObjectStore(ABC):
    """Minimal object store interface used by the uploader."""

    bucket: str

    @abstractmethod
    def ensure_bucket(self) -> None:
        """Create the bucket if absent (idempotent)."""

    @abstractmethod
    def put_file(
        self,
        key: str,
        path: Path,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Write a local file under ``key`` (overwriting) and return its size.

        Raises:
            StorageUnavailable: transient backend failure
            StorageQuotaExceeded: the backend refused the write for quota
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """True if an object is stored under ``key``."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove an object; False if it did not exist."""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store for development and tests.

    Object metadata (content type, cache control, custom keys) is kept in a
    JSON sidecar under ``<bucket>/.meta/``.
    """

    def __init__(self, root_dir: str, bucket: str = "media", quota_bytes: Optional[int] = None):
        self.root_dir = Path(root_dir)
        self.bucket = bucket
        self.quota_bytes = quota_bytes
        self._lock = threading.Lock()

    @property
    def bucket_dir(self) -> Path:
        return self.root_dir / self.bucket

    def ensure_bucket(self) -> None:
        try:
            (self.bucket_dir / ".meta").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create bucket directory {self.bucket_dir}: {e}") from e

    def put_file(
        self,
        key: str,
        path: Path,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        target = self._object_path(key)
        total = Path(path).stat().st_size

        with self._lock:
            if self.quota_bytes is not None:
                existing = target.stat().st_size if target.exists() else 0
                used = self.used_bytes()
                if used - existing + total > self.quota_bytes:
                    raise StorageQuotaExceeded(
                        f"Bucket {self.bucket} quota exceeded: {used} + {total} > {self.quota_bytes} bytes"
                    )

            tmp_path = target.parent / f".{target.name}.{uuid.uuid4().hex}.tmp"
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                written = 0
                with open(path, "rb") as src, open(tmp_path, "wb") as dst:
                    while True:
                        chunk = src.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        dst.write(chunk)
                        written += len(chunk)
                        if progress:
                            progress(written, total)
                    dst.flush()
                    os.fsync(dst.fileno())
                os.replace(tmp_path, target)

                meta_path = self._meta_path(key)
                meta_path.parent.mkdir(parents=True, exist_ok=True)
                meta_path.write_text(
                    json.dumps(
                        {
                            "content_type": content_type,
                            "cache_control": cache_control,
                            "metadata": metadata or {},
                        }
                    )
                )
            except OSError as e:
                if tmp_path.exists():
                    tmp_path.unlink()
                if e.errno in (errno.ENOSPC, errno.EDQUOT):
                    raise StorageQuotaExceeded(f"No space left writing {key}: {e}") from e
                raise StorageUnavailable(f"Failed to write {key}: {e}") from e

        return written

    def exists(self, key: str) -> bool:
        return self._object_path(key).is_file()

    def delete(self, key: str) -> bool:
        target = self._object_path(key)
        if not target.exists():
            return False
        target.unlink()
        meta_path = self._meta_path(key)
        if meta_path.exists():
            meta_path.unlink()
        return True

    def get_metadata(self, key: str) -> Optional[Dict]:
        meta_path = self._meta_path(key)
        if not meta_path.exists():
            return None
        return json.loads(meta_path.read_text())

    def used_bytes(self) -> int:
        if not self.bucket_dir.exists():
            return 0
        total = 0
        for p in self.bucket_dir.rglob("*"):
            if p.is_file() and ".meta" not in p.relative_to(self.bucket_dir).parts:
                total += p.stat().st_size
        return total

    def _object_path(self, key: str) -> Path:
        if key.startswith("/") or ".." in Path(key).parts:
            raise ValueError(f"Invalid object key: {key}")
        return self.bucket_dir / key

    def _meta_path(self, key: str) -> Path:
        return self.bucket_dir / ".meta" / f"{key}.json"


class GCSObjectStore(ObjectStore):
    """Google Cloud Storage backend.

    Error mapping:
    - 403 / 429 mentioning quota → StorageQuotaExceeded
    - other API errors, 5xx, connection failures → StorageUnavailable
    """

    def __init__(
        self,
        bucket: str,
        project: Optional[str] = None,
        timeout_s: float = 60.0,
        client=None,
    ):
        if client is None:
            from google.cloud import storage
            client = storage.Client(project=project)
        self.client = client
        self.bucket = bucket
        self.timeout_s = timeout_s
        self._bucket = None

    def ensure_bucket(self) -> None:
        from google.api_core import exceptions as gexc

        try:
            bucket = self.client.lookup_bucket(self.bucket, timeout=self.timeout_s)
            if bucket is None:
                logger.info("Creating bucket %s", self.bucket)
                try:
                    bucket = self.client.create_bucket(self.bucket, timeout=self.timeout_s)
                except gexc.Conflict:
                    # Created concurrently by another process
                    bucket = self.client.bucket(self.bucket)
            self._bucket = bucket
        except gexc.GoogleAPIError as e:
            raise self._map_error(e, f"ensure bucket {self.bucket}") from e
        except OSError as e:
            raise StorageUnavailable(f"ensure bucket {self.bucket}: {e}") from e

    def put_file(
        self,
        key: str,
        path: Path,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        from google.api_core import exceptions as gexc

        total = Path(path).stat().st_size
        blob = self._get_bucket().blob(key)
        blob.cache_control = cache_control
        blob.metadata = metadata or {}
        try:
            blob.upload_from_filename(str(path), content_type=content_type, timeout=self.timeout_s)
        except gexc.GoogleAPIError as e:
            raise self._map_error(e, f"upload {key}") from e
        except OSError as e:
            raise StorageUnavailable(f"upload {key}: {e}") from e

        # The client library uploads in one call; report completion only.
        if progress:
            progress(total, total)
        return total

    def exists(self, key: str) -> bool:
        return self._get_bucket().blob(key).exists(timeout=self.timeout_s)

    def delete(self, key: str) -> bool:
        from google.api_core import exceptions as gexc

        try:
            self._get_bucket().blob(key).delete(timeout=self.timeout_s)
        except gexc.NotFound:
            return False
        return True

    def _get_bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket)
        return self._bucket

    @staticmethod
    def _map_error(error: Exception, action: str) -> Exception:
        code = getattr(error, "code", None)
        text = str(error).lower()
        if code in (403, 429) and "quota" in text:
            return StorageQuotaExceeded(f"{action}: {error}")
        return StorageUnavailable(f"{action}: {error}")


@dataclass
class UploadResult:
    """Where a variant landed."""
    storage_key: str
    url: str
    size_bytes: int


class StorageUploader:
    """Uploads generated variants with content type and long-cache headers.

    The bucket is ensured once per uploader lifetime, on first upload. A
    failed check is retried on the next upload.
    """

    def __init__(
        self,
        store: ObjectStore,
        url_prefix: str = "media://",
        cache_control: str = "public, max-age=31536000, immutable",
    ):
        self.store = store
        self.url_prefix = url_prefix
        self.cache_control = cache_control
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: StorageConfig) -> "StorageUploader":
        if config.backend == "gcs":
            store = GCSObjectStore(config.bucket, project=config.project, timeout_s=config.timeout_s)
        else:
            store = LocalObjectStore(config.root_dir, bucket=config.bucket, quota_bytes=config.quota_bytes)
        return cls(store, url_prefix=config.url_prefix, cache_control=config.cache_control)

    def ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        with self._bucket_lock:
            if not self._bucket_ready:
                self.store.ensure_bucket()
                self._bucket_ready = True

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}{self.store.bucket}/{key}"

    def upload(self, job_id: str, variant, progress: Optional[ProgressCallback] = None) -> UploadResult:
        """Upload one GeneratedVariant and return its key, URL and size."""
        self.ensure_bucket()

        variant_type = getattr(variant.type, "value", variant.type)
        key = storage_key(job_id, variant_type, variant.format)
        metadata = {"job-id": job_id, "variant": variant_type}
        if variant.width:
            metadata["width"] = str(variant.width)
        if variant.height:
            metadata["height"] = str(variant.height)

        size = self.store.put_file(
            key,
            variant.local_path,
            content_type=CONTENT_TYPES.get(variant.format, "application/octet-stream"),
            cache_control=self.cache_control,
            metadata=metadata,
            progress=progress,
        )
        logger.debug("Uploaded %s (%d bytes)", key, size)
        return UploadResult(storage_key=key, url=self.url_for(key), size_bytes=size)
