"""Idempotent, batched upserts into a target store."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from services.retry import RetryPolicy, call_with_retry
from services.target import (
    ConstraintViolationError,
    TargetStore,
    TargetStoreError,
    TransientStoreError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class WriteSummary:
    table: str
    total: int = 0
    written: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    nulled_references: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TargetWriter:
    """Write records in bounded batches keyed by a conflict column.

    Re-running a write with the same records converges on the same rows.  A
    batch that fails is logged and retried row by row; a row rejected for a
    broken reference is retried once with its reference fields cleared.  No
    failure stops the remaining batches.
    """

    def __init__(
        self,
        store: TargetStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    def _upsert(self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: str) -> None:
        call_with_retry(
            lambda: self.store.upsert(table, rows, conflict_key),
            policy=self.retry,
            retry_on=(TransientStoreError,),
            description=f"upsert {len(rows)} rows into {table}",
            sleep=self._sleep,
        )

    def write(
        self,
        table: str,
        records: Iterable[Mapping[str, Any]],
        *,
        conflict_key: str = "id",
        reference_fields: Sequence[str] = (),
    ) -> WriteSummary:
        summary = WriteSummary(table=table)
        pending: Dict[Any, Dict[str, Any]] = {}
        for record in records:
            summary.total += 1
            key = record.get(conflict_key)
            if key is None or key == "":
                summary.skipped += 1
                LOGGER.warning("Skipping %s record without %s", table, conflict_key)
                continue
            if key in pending:
                summary.duplicates += 1
                LOGGER.debug("Duplicate %s=%s in %s; keeping the later record", conflict_key, key, table)
            pending[key] = dict(record)

        rows = list(pending.values())
        for start in range(0, len(rows), self.batch_size):
            chunk = rows[start:start + self.batch_size]
            try:
                self._upsert(table, chunk, conflict_key)
                summary.written += len(chunk)
            except TargetStoreError as exc:
                LOGGER.error(
                    "Batch %s-%s for %s failed: %s; retrying row by row",
                    start + 1,
                    start + len(chunk),
                    table,
                    exc,
                )
                for row in chunk:
                    self._write_single(table, row, conflict_key, reference_fields, summary)
            LOGGER.info("%s: %s/%s rows written", table, summary.written, len(rows))

        if summary.failed:
            LOGGER.error(
                "%s: %s rows failed: %s", table, summary.failed, ", ".join(summary.failed_ids)
            )
        return summary

    def _write_single(
        self,
        table: str,
        row: Dict[str, Any],
        conflict_key: str,
        reference_fields: Sequence[str],
        summary: WriteSummary,
    ) -> None:
        try:
            self._upsert(table, [row], conflict_key)
            summary.written += 1
            return
        except ConstraintViolationError as exc:
            error: TargetStoreError = exc
            present = [name for name in reference_fields if row.get(name) is not None]
            if present:
                LOGGER.warning(
                    "%s %s rejected (%s); retrying without %s",
                    table,
                    row.get(conflict_key),
                    exc,
                    ", ".join(present),
                )
                stripped = dict(row)
                for name in present:
                    stripped[name] = None
                try:
                    self._upsert(table, [stripped], conflict_key)
                    summary.written += 1
                    summary.nulled_references += 1
                    return
                except TargetStoreError as retry_exc:
                    error = retry_exc
        except TargetStoreError as exc:
            error = exc

        summary.failed += 1
        summary.failed_ids.append(str(row.get(conflict_key)))
        LOGGER.error("%s %s could not be written: %s", table, row.get(conflict_key), error)
