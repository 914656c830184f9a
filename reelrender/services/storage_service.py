"""Object storage for render inputs, artifacts and cache entries.

Two interchangeable backends share one interface: `LocalStorageService` for
development without GCS, and `GCSStorageService` for production. One instance
is bound to one bucket; the engine uses an input bucket (scene images,
narration, captions, music, motion clips) and an output bucket (current
artifacts and cache entries).

All methods are blocking; async callers wrap them with `asyncio.to_thread`.
"""

import base64
import hashlib
import hmac
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from reelrender.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class ObjectInfo:
    key: str
    size: int
    checksum: str  # base64 MD5, as GCS reports it
    updated: datetime | None = None


class StorageService(Protocol):
    bucket_name: str

    def list_objects(self, prefix: str) -> list[ObjectInfo]: ...

    def get_checksum(self, storage_key: str) -> str | None: ...

    def exists(self, storage_key: str) -> bool: ...

    def download_file(self, storage_key: str, local_path: str) -> str: ...

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str: ...

    def upload_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str: ...

    def copy(self, source_key: str, dest_key: str, dest: "StorageService | None" = None) -> None: ...

    def delete_file(self, storage_key: str) -> bool: ...

    def make_public(self, storage_key: str) -> None: ...

    def get_public_url(self, storage_key: str) -> str: ...

    def generate_signed_url(self, storage_key: str, expires_minutes: int = 60) -> str: ...


def parse_gs_uri(uri: str) -> tuple[str, str] | None:
    """Split `gs://bucket/key` into (bucket, key)."""
    if not uri or not uri.startswith("gs://"):
        return None
    rest = uri[len("gs://"):]
    bucket, _, key = rest.partition("/")
    if not bucket or not key:
        return None
    return bucket, key


def _md5_b64(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, bucket_name: str, base_path: str | None = None, base_url: str | None = None) -> None:
        settings = get_settings()
        self.bucket_name = bucket_name
        self.base_path = Path(base_path or settings.local_storage_path) / bucket_name
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url or settings.local_storage_base_url).rstrip("/")
        self._public: set[str] = set()
        self._secret = settings.app_name.encode("utf-8")

    def _get_full_path(self, storage_key: str) -> Path:
        return self.base_path / storage_key

    def list_objects(self, prefix: str) -> list[ObjectInfo]:
        result = []
        for path in sorted(self.base_path.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.base_path).as_posix()
            if key.startswith(prefix):
                stat = path.stat()
                result.append(
                    ObjectInfo(
                        key=key,
                        size=stat.st_size,
                        checksum=_md5_b64(path),
                        updated=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
        return result

    def get_checksum(self, storage_key: str) -> str | None:
        path = self._get_full_path(storage_key)
        if not path.is_file():
            return None
        return _md5_b64(path)

    def exists(self, storage_key: str) -> bool:
        return self._get_full_path(storage_key).is_file()

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Copy file to local path."""
        full_path = self._get_full_path(storage_key)
        if not full_path.is_file():
            raise FileNotFoundError(f"{self.bucket_name}/{storage_key}")
        shutil.copy(str(full_path), local_path)
        return local_path

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload from local path."""
        full_path = self._get_full_path(storage_key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(local_path, str(full_path))
        return self.get_public_url(storage_key)

    def upload_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        full_path = self._get_full_path(storage_key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return self.get_public_url(storage_key)

    def copy(self, source_key: str, dest_key: str, dest: "StorageService | None" = None) -> None:
        target = dest or self
        source_path = self._get_full_path(source_key)
        if not source_path.is_file():
            raise FileNotFoundError(f"{self.bucket_name}/{source_key}")
        target.upload_file(str(source_path), dest_key)

    def delete_file(self, storage_key: str) -> bool:
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def make_public(self, storage_key: str) -> None:
        self._public.add(storage_key)

    def is_public(self, storage_key: str) -> bool:
        return storage_key in self._public

    def get_public_url(self, storage_key: str) -> str:
        return f"{self.base_url}/{self.bucket_name}/{quote(storage_key)}"

    def generate_signed_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        """Local stand-in for a V4 signed URL: expiry plus an HMAC over key and expiry."""
        expires = int(time.time()) + expires_minutes * 60
        payload = f"{self.bucket_name}/{storage_key}:{expires}".encode("utf-8")
        signature = hmac.new(self._secret, payload, hashlib.sha256).hexdigest()
        return f"{self.get_public_url(storage_key)}?X-Expires={expires}&X-Signature={signature}"

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, bucket_name: str) -> None:
        from google.auth import compute_engine, default
        from google.auth.transport import requests as auth_requests
        from google.cloud import storage

        settings = get_settings()
        self.bucket_name = bucket_name
        self._client = storage.Client(project=settings.gcs_project_id) if settings.gcs_project_id else storage.Client()
        self._bucket = self._client.bucket(bucket_name)
        self._timeout = settings.storage_timeout_s

        # On Cloud Run the default credentials cannot sign; V4 URLs are signed
        # through the IAM signBlob API using the service account email + token.
        self._credentials, _ = default()
        self._auth_request = auth_requests.Request()
        self._iam_signing = isinstance(self._credentials, compute_engine.Credentials)

    def _blob(self, storage_key: str):
        return self._bucket.blob(storage_key)

    def list_objects(self, prefix: str) -> list[ObjectInfo]:
        blobs = self._client.list_blobs(self.bucket_name, prefix=prefix, timeout=self._timeout)
        return sorted(
            (ObjectInfo(key=b.name, size=b.size or 0, checksum=b.md5_hash or "", updated=b.updated) for b in blobs),
            key=lambda o: o.key,
        )

    def get_checksum(self, storage_key: str) -> str | None:
        blob = self._bucket.get_blob(storage_key, timeout=self._timeout)
        if blob is None:
            return None
        return blob.md5_hash or ""

    def exists(self, storage_key: str) -> bool:
        return self._blob(storage_key).exists(timeout=self._timeout)

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Download a file from GCS to local path."""
        self._blob(storage_key).download_to_filename(local_path, timeout=self._timeout)
        return local_path

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        blob = self._blob(storage_key)
        blob.upload_from_filename(local_path, content_type=content_type, timeout=self._timeout)
        return self.get_public_url(storage_key)

    def upload_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        self._blob(storage_key).upload_from_string(
            data, content_type=content_type or "application/octet-stream", timeout=self._timeout
        )
        return self.get_public_url(storage_key)

    def copy(self, source_key: str, dest_key: str, dest: "StorageService | None" = None) -> None:
        target_bucket = self._bucket
        if dest is not None and dest.bucket_name != self.bucket_name:
            target_bucket = self._client.bucket(dest.bucket_name)
        self._bucket.copy_blob(self._blob(source_key), target_bucket, dest_key, timeout=self._timeout)

    def delete_file(self, storage_key: str) -> bool:
        """Delete a file from GCS."""
        blob = self._blob(storage_key)
        if blob.exists(timeout=self._timeout):
            blob.delete(timeout=self._timeout)
            return True
        return False

    def make_public(self, storage_key: str) -> None:
        self._blob(storage_key).make_public(timeout=self._timeout)

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{self.bucket_name}/{quote(storage_key)}"

    def generate_signed_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        """Generate a V4 signed download URL."""
        kwargs = {}
        if self._iam_signing:
            if not self._credentials.valid:
                self._credentials.refresh(self._auth_request)
            kwargs = {
                "service_account_email": self._credentials.service_account_email,
                "access_token": self._credentials.token,
            }
        return self._blob(storage_key).generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=expires_minutes),
            method="GET",
            **kwargs,
        )


def create_storage_service(bucket_name: str) -> StorageService:
    """Use LocalStorageService or GCSStorageService based on config."""
    settings = get_settings()
    if settings.use_local_storage:
        return LocalStorageService(bucket_name)
    return GCSStorageService(bucket_name)
