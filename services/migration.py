"""Copy document-store collections into their relational tables."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from services.identifiers import to_canonical_id
from services.normalizer import normalize_value
from services.projection import project_record, rename_fields, round_money_columns
from services.source import DEFAULT_BATCH_SIZE, SourceDocument, SourceStore
from services.writer import TargetWriter, WriteSummary

LOGGER = logging.getLogger(__name__)

# Placeholder documents created to materialise empty collections.
SKIPPED_KEYS = frozenset({"_initialized"})


@dataclass(frozen=True)
class CollectionMapping:
    source: str
    table: str
    conflict_key: str = "id"
    id_field: str = "id"
    canonical_ids: bool = True
    reference_fields: Tuple[str, ...] = ()


# Listed in dependency order: referenced tables first.  Source names are the
# collections the web app writes to, which mix camelCase and snake_case.
COLLECTION_MAPPINGS: Dict[str, CollectionMapping] = {
    mapping.source: mapping
    for mapping in (
        CollectionMapping("branches", "branches"),
        CollectionMapping("userRoles", "user_roles", reference_fields=("user_id", "branch_id")),
        CollectionMapping("customers", "customers"),
        CollectionMapping("products", "products"),
        CollectionMapping("materials", "materials"),
        CollectionMapping("orders", "orders", reference_fields=("branch_id",)),
        CollectionMapping(
            "order_transfers",
            "order_transfers",
            reference_fields=("original_order_id", "order_branch_id", "process_branch_id"),
        ),
        CollectionMapping("materialRequests", "material_requests", reference_fields=("branch_id",)),
        CollectionMapping("expenseRequests", "expense_requests", reference_fields=("branch_id",)),
        CollectionMapping(
            "simpleExpenses",
            "simple_expenses",
            reference_fields=("branch_id", "related_request_id"),
        ),
        CollectionMapping("hr_documents", "hr_documents", reference_fields=("user_id",)),
        CollectionMapping("albums", "albums", reference_fields=("branch_id",)),
        CollectionMapping("auditLogs", "audit_logs", reference_fields=("branch_id",)),
        CollectionMapping("notifications", "notifications", reference_fields=("user_id", "branch_id")),
        CollectionMapping(
            "dailyStats", "daily_stats", conflict_key="date", id_field="date", canonical_ids=False
        ),
    )
}


@dataclass
class MigrationSummary:
    collection: str
    table: str
    read: int = 0
    written: int = 0
    failed: int = 0
    skipped: int = 0
    nulled_references: int = 0
    failed_ids: List[str] = field(default_factory=list)
    cursor: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def absorb(self, write: WriteSummary) -> None:
        self.written += write.written
        self.failed += write.failed
        self.skipped += write.skipped + write.duplicates
        self.nulled_references += write.nulled_references
        self.failed_ids.extend(write.failed_ids)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UnknownCollectionError(KeyError):
    """Raised for a collection without a table mapping."""


def get_mapping(collection: str) -> CollectionMapping:
    try:
        return COLLECTION_MAPPINGS[collection]
    except KeyError:
        raise UnknownCollectionError(
            f"Unknown collection {collection!r}; expected one of "
            + ", ".join(COLLECTION_MAPPINGS)
        ) from None


def prepare_record(mapping: CollectionMapping, document: SourceDocument) -> Optional[Dict[str, Any]]:
    """Turn one source document into a row for ``mapping.table``."""

    data = normalize_value(document.data)
    if not isinstance(data, Mapping):
        LOGGER.warning("%s/%s is not a document; skipped", mapping.source, document.key)
        return None

    record = rename_fields(mapping.table, data)
    record.pop("id", None)
    record[mapping.id_field] = (
        to_canonical_id(document.key) if mapping.canonical_ids else document.key
    )
    for name in mapping.reference_fields:
        value = record.get(name)
        if value not in (None, ""):
            record[name] = to_canonical_id(str(value))

    record = round_money_columns(record)
    return project_record(mapping.table, record, id_field=mapping.id_field)


def migrate_collection(
    source: SourceStore,
    writer: TargetWriter,
    mapping: CollectionMapping,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    start_after: Optional[str] = None,
) -> MigrationSummary:
    """Stream one collection into its table.

    The returned summary's ``cursor`` is the last document id handled, which
    can be passed back as ``start_after`` to resume an interrupted run.
    """

    summary = MigrationSummary(collection=mapping.source, table=mapping.table, cursor=start_after)
    LOGGER.info("Migrating %s -> %s", mapping.source, mapping.table)

    for batch in source.iter_batches(mapping.source, batch_size, start_after):
        records = []
        for document in batch.documents:
            summary.read += 1
            if document.key in SKIPPED_KEYS:
                summary.skipped += 1
                continue
            record = prepare_record(mapping, document)
            if record is None:
                summary.skipped += 1
                continue
            records.append(record)

        summary.absorb(
            writer.write(
                mapping.table,
                records,
                conflict_key=mapping.conflict_key,
                reference_fields=mapping.reference_fields,
            )
        )
        summary.cursor = batch.cursor
        LOGGER.info(
            "%s: read %s, written %s, failed %s",
            mapping.source,
            summary.read,
            summary.written,
            summary.failed,
        )
    return summary


def migrate_all(
    source: SourceStore,
    writer: TargetWriter,
    collections: Optional[Iterable[str]] = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[MigrationSummary]:
    names = list(collections) if collections is not None else list(COLLECTION_MAPPINGS)
    mappings = [get_mapping(name) for name in names]
    return [
        migrate_collection(source, writer, mapping, batch_size=batch_size)
        for mapping in mappings
    ]
