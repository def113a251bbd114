"""Copy binary attachments from Firebase Storage into Supabase Storage buckets.

Objects are routed to a bucket by their top-level folder and copied in chunks;
the objects of one chunk are copied concurrently and each chunk finishes
before the next one starts.
"""
from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import requests

LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_BUCKET = "general"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

BUCKET_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("sample-albums/", "sample-albums"),
    ("photos/", "photos"),
    ("receipts/", "receipts"),
    ("hr_submissions/", "hr-submissions"),
    ("backups/", "backups"),
)

_UNSAFE_CHARACTERS = re.compile(r"[^a-zA-Z0-9.\-_]")

SUCCESS = "success"
ERROR = "error"
SKIPPED = "skipped"


class StorageError(RuntimeError):
    """Raised when an object cannot be read or written."""


@dataclass(frozen=True)
class StoredObject:
    path: str
    content_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class StorageSummary:
    total: int = 0
    success: int = 0
    error: int = 0
    skipped: int = 0
    failed_paths: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error == 0

    def to_dict(self):
        return asdict(self)


def sanitize_path(path: str) -> str:
    return "/".join(_UNSAFE_CHARACTERS.sub("_", part) for part in path.split("/"))


def route_object(path: str) -> Tuple[str, str]:
    """Return ``(bucket, object_path)`` for a source object path."""
    for prefix, bucket in BUCKET_ROUTES:
        if path.startswith(prefix):
            return bucket, sanitize_path(path[len(prefix):])
    return DEFAULT_BUCKET, sanitize_path(path)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class FirebaseBucketSource:
    def __init__(self, bucket):
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "FirebaseBucketSource":
        import firebase_admin
        from firebase_admin import credentials, storage

        settings.require_firebase()
        settings.require_storage_bucket()
        if not firebase_admin._apps:
            firebase_admin.initialize_app(
                credentials.Certificate(settings.firebase_credentials),
                {"storageBucket": settings.storage_bucket},
            )
        return cls(storage.bucket(settings.storage_bucket))

    def list(self, prefix: str = "") -> List[StoredObject]:
        return [
            StoredObject(blob.name, blob.content_type, blob.size)
            for blob in self._bucket.list_blobs(prefix=prefix or None)
        ]

    def download(self, path: str) -> bytes:
        return self._bucket.blob(path).download_as_bytes()


class SupabaseStorage:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self._storage_url = f"{base_url.rstrip('/')}/storage/v1"
        self._session = session or requests.Session()
        self._session.headers.update({"apikey": api_key, "Authorization": f"Bearer {api_key}"})
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SupabaseStorage":
        settings.require_supabase()
        return cls(settings.supabase_url, settings.supabase_key, timeout=settings.request_timeout)

    def _request(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.request(
                method, f"{self._storage_url}/{path}", timeout=self._timeout, **kwargs
            )
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise StorageError(f"{action}: HTTP {exc.response.status_code} {exc.response.text}") from exc
        except requests.RequestException as exc:
            raise StorageError(f"{action}: {exc}") from exc
        return resp

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        self._request(
            "POST",
            f"object/{bucket}/{path}",
            f"upload {bucket}/{path}",
            data=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )

    def list(self, bucket: str, prefix: str = "", *, page_size: int = 1000) -> List[str]:
        """Names of the objects directly inside folder ``prefix``."""
        names: List[str] = []
        offset = 0
        while True:
            resp = self._request(
                "POST",
                f"object/list/{bucket}",
                f"list {bucket}/{prefix}",
                json={
                    "prefix": prefix,
                    "limit": page_size,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
            )
            entries = resp.json() or []
            names.extend(entry["name"] for entry in entries if entry.get("id"))
            if len(entries) < page_size:
                return names
            offset += len(entries)


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class StorageMigrator:
    def __init__(self, source, target, *, concurrency: int = DEFAULT_CONCURRENCY, skip_existing: bool = False):
        self.source = source
        self.target = target
        self.concurrency = max(1, concurrency)
        self.skip_existing = skip_existing
        self._listings: Dict[Tuple[str, str], Set[str]] = {}

    def _already_present(self, bucket: str, path: str) -> bool:
        folder, _, name = path.rpartition("/")
        key = (bucket, folder)
        if key not in self._listings:
            try:
                self._listings[key] = set(self.target.list(bucket, folder))
            except StorageError as exc:
                LOGGER.warning("Could not list %s/%s: %s", bucket, folder, exc)
                self._listings[key] = set()
        return name in self._listings[key]

    def _copy(self, item: StoredObject) -> str:
        bucket, path = route_object(item.path)
        try:
            data = self.source.download(item.path)
            self.target.upload(bucket, path, data, item.content_type or DEFAULT_CONTENT_TYPE)
        except Exception as exc:
            LOGGER.error("Failed to copy %s to %s/%s: %s", item.path, bucket, path, exc)
            return ERROR
        return SUCCESS

    def run(self, prefix: str = "") -> StorageSummary:
        objects = self.source.list(prefix)
        summary = StorageSummary(total=len(objects))
        LOGGER.info("Found %s objects to copy", len(objects))

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for start in range(0, len(objects), self.concurrency):
                chunk = objects[start:start + self.concurrency]
                to_copy = []
                for item in chunk:
                    if item.path.endswith("/"):
                        summary.skipped += 1
                        continue
                    if self.skip_existing and self._already_present(*route_object(item.path)):
                        summary.skipped += 1
                        continue
                    to_copy.append(item)

                futures = [(item, pool.submit(self._copy, item)) for item in to_copy]
                for item, future in futures:
                    if future.result() == SUCCESS:
                        summary.success += 1
                    else:
                        summary.error += 1
                        summary.failed_paths.append(item.path)
                LOGGER.info(
                    "Processed %s/%s (success %s, error %s, skipped %s)",
                    start + len(chunk),
                    len(objects),
                    summary.success,
                    summary.error,
                    summary.skipped,
                )
        return summary
