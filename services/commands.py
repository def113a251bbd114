"""Command-line entry point tying the reconciliation services together.

Every sub-command takes a collection or date range plus options, prints a JSON
summary and exits with 0 on success or 1 when anything failed.
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from dateutil.parser import parse as dateutil_parse

from database import get_db_connection, init_db
from data_paths import ensure_reports_dir
from services.audit import compare_stores, orders_between
from services.daily_stats import rebuild_daily_stats, verify_daily_stats
from services.duplicates import find_duplicates, write_report
from services.migration import (
    COLLECTION_MAPPINGS,
    UnknownCollectionError,
    get_mapping,
    migrate_all,
    migrate_collection,
)
from services.retry import RetryPolicy
from services.source import FirestoreSource, JsonExportSource, SourceStore, SourceStoreError
from services.storage_migration import FirebaseBucketSource, StorageMigrator, SupabaseStorage
from services.target import SqliteTargetStore, SupabaseTargetStore, TargetStore, TargetStoreError
from services.writer import TargetWriter
from settings import ConfigurationError, Settings, load_settings

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Factories shared with the HTTP app
# ---------------------------------------------------------------------------


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(attempts=settings.retry_attempts, backoff=settings.retry_backoff)


def build_target(settings: Settings) -> TargetStore:
    if settings.target_backend == "sqlite":
        conn = get_db_connection(settings.sqlite_path)
        init_db(conn)
        return SqliteTargetStore(conn, retry=retry_policy(settings))
    return SupabaseTargetStore.from_settings(settings)


def build_source(settings: Settings, export: Optional[Path] = None) -> SourceStore:
    if export is not None:
        return JsonExportSource.from_file(export)
    return FirestoreSource.from_settings(settings)


def build_writer(settings: Settings, store: TargetStore) -> TargetWriter:
    return TargetWriter(store, batch_size=settings.batch_size, retry=retry_policy(settings))


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def _cmd_migrate(args, settings: Settings) -> int:
    names = args.collections or list(COLLECTION_MAPPINGS)
    for name in names:
        get_mapping(name)
    if settings.target_backend == "supabase":
        settings.require_supabase()
    if args.export is None:
        settings.require_firebase()

    source = build_source(settings, args.export)
    writer = build_writer(settings, build_target(settings))
    if args.start_after:
        if len(names) != 1:
            raise SystemExit("--start-after needs exactly one collection")
        summaries = [
            migrate_collection(
                source,
                writer,
                get_mapping(names[0]),
                batch_size=settings.page_size,
                start_after=args.start_after,
            )
        ]
    else:
        summaries = migrate_all(source, writer, names, batch_size=settings.page_size)

    _print([summary.to_dict() for summary in summaries])
    return 0 if all(summary.ok for summary in summaries) else 1


def _cmd_rebuild_stats(args, settings: Settings) -> int:
    store = build_target(settings)
    summary = rebuild_daily_stats(
        store,
        settings.timezone,
        start=args.start,
        end=args.end,
        writer=build_writer(settings, store),
        page_size=settings.page_size,
    )
    _print(summary.to_dict())
    return 0 if summary.ok else 1


def _cmd_verify_stats(args, settings: Settings) -> int:
    drift = verify_daily_stats(build_target(settings), settings.timezone, page_size=settings.page_size)
    _print({"drift": drift, "consistent": not drift})
    return 0 if not drift else 1


def _cmd_duplicates(args, settings: Settings) -> int:
    store = build_target(settings)
    orders = orders_between(
        store.iter_rows("orders", order_by="id", page_size=settings.page_size),
        settings.timezone,
        args.start,
        args.end,
    )
    candidates = find_duplicates(orders, include_canceled=args.include_canceled)
    output = args.output or ensure_reports_dir() / "duplicates.csv"
    write_report(candidates, output)
    _print({"candidates": len(candidates), "report": str(output)})
    return 0


def _cmd_audit(args, settings: Settings) -> int:
    if args.export is None:
        settings.require_firebase()
    source = build_source(settings, args.export)
    report = compare_stores(
        source,
        build_target(settings),
        settings.timezone,
        args.start,
        args.end,
        page_size=settings.page_size,
    )
    payload = report.to_dict()
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    _print(payload)
    return 0 if report.consistent else 1


def _cmd_migrate_storage(args, settings: Settings) -> int:
    settings.require_supabase()
    migrator = StorageMigrator(
        FirebaseBucketSource.from_settings(settings),
        SupabaseStorage.from_settings(settings),
        concurrency=args.concurrency or settings.storage_concurrency,
        skip_existing=args.skip_existing,
    )
    summary = migrator.run(args.prefix)
    _print(summary.to_dict())
    return 0 if summary.ok else 1


def _day(value: str) -> str:
    """Argument type accepting any date dateutil can read, returned as YYYY-MM-DD."""
    try:
        return dateutil_parse(value).date().isoformat()
    except (ValueError, OverflowError):
        raise argparse.ArgumentTypeError(f"invalid date: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate and reconcile ERP data between stores.")
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    migrate = sub.add_parser("migrate", help="Copy collections into the target store")
    migrate.add_argument("collections", nargs="*", help="Source collections (default: all)")
    migrate.add_argument("--export", type=Path, help="Read from a JSON export instead of Firestore")
    migrate.add_argument("--start-after", help="Resume after this document id")
    migrate.set_defaults(handler=_cmd_migrate)

    rebuild = sub.add_parser("rebuild-stats", help="Rebuild daily revenue rollups")
    rebuild.add_argument("--start", type=_day, help="First business day (YYYY-MM-DD)")
    rebuild.add_argument("--end", type=_day, help="Last business day (YYYY-MM-DD)")
    rebuild.set_defaults(handler=_cmd_rebuild_stats)

    verify = sub.add_parser("verify-stats", help="Report rollup rows that drift from the orders")
    verify.set_defaults(handler=_cmd_verify_stats)

    duplicates = sub.add_parser("duplicates", help="Report probable duplicate orders")
    duplicates.add_argument("--start", type=_day, help="First business day (YYYY-MM-DD)")
    duplicates.add_argument("--end", type=_day, help="Last business day (YYYY-MM-DD)")
    duplicates.add_argument("--output", type=Path, help="Report path (.csv or .json)")
    duplicates.add_argument("--include-canceled", action="store_true")
    duplicates.set_defaults(handler=_cmd_duplicates)

    audit = sub.add_parser("audit", help="Compare orders between the two stores")
    audit.add_argument("--start", type=_day, required=True, help="First business day (YYYY-MM-DD)")
    audit.add_argument("--end", type=_day, required=True, help="Last business day (YYYY-MM-DD)")
    audit.add_argument("--export", type=Path, help="Read the source from a JSON export")
    audit.add_argument("--output", type=Path, help="Also write the report to this file")
    audit.set_defaults(handler=_cmd_audit)

    storage = sub.add_parser("migrate-storage", help="Copy storage objects into Supabase buckets")
    storage.add_argument("--prefix", default="", help="Only copy objects under this prefix")
    storage.add_argument("--concurrency", type=int, help="Objects copied at once")
    storage.add_argument("--skip-existing", action="store_true")
    storage.set_defaults(handler=_cmd_migrate_storage)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``reconcile.py``."""

    parser = build_parser()
    args = parser.parse_args(argv)
    start, end = getattr(args, "start", None), getattr(args, "end", None)
    if start and end and start > end:
        parser.error(f"--start {start} is after --end {end}")
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(dotenv_path=args.env_file)
        return args.handler(args, settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 1
    except UnknownCollectionError as exc:
        print(f"Error: {exc.args[0]}")
        return 1
    except (SourceStoreError, TargetStoreError) as exc:
        LOGGER.exception("Run aborted")
        print(f"Run aborted: {exc}")
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
