"""Readers for the document store the ERP is migrating away from.

Every reader hands out documents as a lazy sequence of batches ordered by
document id.  Each batch carries the cursor needed to resume right after it,
so an interrupted pass can restart without re-reading or skipping documents.
"""
from __future__ import annotations

import bisect
import json
import logging
import operator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from services.retry import RetryPolicy, call_with_retry

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

Filter = Tuple[str, str, Any]

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


class SourceStoreError(RuntimeError):
    """Raised when the source store cannot be read."""


@dataclass(frozen=True)
class SourceDocument:
    key: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class DocumentBatch:
    documents: List[SourceDocument]
    cursor: Optional[str]


class SourceStore:
    """Common interface of document-store readers."""

    def iter_batches(
        self,
        collection: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_after: Optional[str] = None,
        filters: Sequence[Filter] = (),
    ) -> Iterator[DocumentBatch]:
        raise NotImplementedError

    def iter_documents(
        self,
        collection: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_after: Optional[str] = None,
        filters: Sequence[Filter] = (),
    ) -> Iterator[SourceDocument]:
        for batch in self.iter_batches(collection, batch_size, start_after, filters):
            yield from batch.documents


def _matches(data: Mapping[str, Any], filters: Sequence[Filter]) -> bool:
    for field_name, op, expected in filters:
        compare = _OPERATORS.get(op)
        if compare is None:
            raise SourceStoreError(f"Unsupported filter operator {op!r}")
        if field_name not in data:
            return False
        try:
            if not compare(data[field_name], expected):
                return False
        except TypeError:
            return False
    return True


# ---------------------------------------------------------------------------
# In-memory and JSON export sources
# ---------------------------------------------------------------------------


class MemorySource(SourceStore):
    """Source backed by plain dictionaries, keyed by collection then id."""

    def __init__(self, collections: Optional[Mapping[str, Mapping[str, Mapping[str, Any]]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, documents in (collections or {}).items():
            for key, data in documents.items():
                self.add(name, key, data)

    def add(self, collection: str, key: str, data: Mapping[str, Any]) -> None:
        self._collections.setdefault(collection, {})[str(key)] = dict(data)

    def collections(self) -> List[str]:
        return sorted(self._collections)

    def iter_batches(
        self,
        collection: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_after: Optional[str] = None,
        filters: Sequence[Filter] = (),
    ) -> Iterator[DocumentBatch]:
        documents = self._collections.get(collection, {})
        keys = sorted(key for key, data in documents.items() if _matches(data, filters))
        position = bisect.bisect_right(keys, start_after) if start_after is not None else 0
        batch_size = max(1, batch_size)
        while position < len(keys):
            page = keys[position:position + batch_size]
            position += len(page)
            yield DocumentBatch(
                documents=[SourceDocument(key, dict(documents[key])) for key in page],
                cursor=page[-1],
            )


class JsonExportSource(MemorySource):
    """Source reading a JSON export of the document store.

    Two layouts are accepted: ``{collection: {doc_id: {...}}}`` and
    ``{collection: [{"id": doc_id, ...}, ...]}``.  Timestamps are expected in
    the admin SDK's ``{"_seconds", "_nanoseconds"}`` form.
    """

    @classmethod
    def from_file(cls, path: Path) -> "JsonExportSource":
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SourceStoreError(f"Could not read export {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SourceStoreError(f"Export {path} must contain a JSON object")

        source = cls()
        for collection, documents in payload.items():
            if isinstance(documents, dict):
                for key, data in documents.items():
                    if isinstance(data, dict):
                        source.add(collection, key, data)
            elif isinstance(documents, list):
                for entry in documents:
                    if not isinstance(entry, dict):
                        continue
                    data = dict(entry)
                    key = data.pop("id", None) or data.pop("_id", None)
                    if key is None:
                        LOGGER.warning("Skipping %s entry without id in %s", collection, path)
                        continue
                    source.add(collection, str(key), data)
        return source


# ---------------------------------------------------------------------------
# Firestore
# ---------------------------------------------------------------------------


def init_firestore_client(credentials_path: str):
    """Return a Firestore client, initialising the default app once."""

    import firebase_admin
    from firebase_admin import credentials, firestore

    if not firebase_admin._apps:
        cred = credentials.Certificate(credentials_path)
        firebase_admin.initialize_app(cred)
    return firestore.client()


class FirestoreSource(SourceStore):
    def __init__(self, client, *, retry: Optional[RetryPolicy] = None):
        self._client = client
        self._retry = retry or RetryPolicy()

    @classmethod
    def from_settings(cls, settings) -> "FirestoreSource":
        settings.require_firebase()
        client = init_firestore_client(settings.firebase_credentials)
        return cls(
            client,
            retry=RetryPolicy(attempts=settings.retry_attempts, backoff=settings.retry_backoff),
        )

    def _call(self, func, description: str):
        from google.api_core import exceptions as google_exceptions

        transient = (
            google_exceptions.ServiceUnavailable,
            google_exceptions.DeadlineExceeded,
            google_exceptions.ResourceExhausted,
            google_exceptions.InternalServerError,
        )
        try:
            return call_with_retry(
                func, policy=self._retry, retry_on=transient, description=description
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise SourceStoreError(f"{description} failed: {exc}") from exc

    def iter_batches(
        self,
        collection: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_after: Optional[str] = None,
        filters: Sequence[Filter] = (),
    ) -> Iterator[DocumentBatch]:
        from google.cloud.firestore_v1.base_query import FieldFilter
        from google.cloud.firestore_v1.field_path import FieldPath

        collection_ref = self._client.collection(collection)
        batch_size = max(1, batch_size)

        last_snapshot = None
        if start_after is not None:
            last_snapshot = self._call(
                lambda: collection_ref.document(start_after).get(),
                f"read cursor {collection}/{start_after}",
            )
            if not last_snapshot.exists:
                raise SourceStoreError(
                    f"Cursor document {collection}/{start_after} no longer exists"
                )

        while True:
            query = collection_ref
            for field_name, op, value in filters:
                query = query.where(filter=FieldFilter(field_name, op, value))
            query = query.order_by(FieldPath.document_id()).limit(batch_size)
            if last_snapshot is not None:
                query = query.start_after(last_snapshot)

            snapshots = self._call(
                lambda: list(query.stream()), f"read {collection} page"
            )
            if not snapshots:
                return
            last_snapshot = snapshots[-1]
            yield DocumentBatch(
                documents=[
                    SourceDocument(snapshot.id, snapshot.to_dict() or {})
                    for snapshot in snapshots
                ],
                cursor=last_snapshot.id,
            )
            if len(snapshots) < batch_size:
                return
