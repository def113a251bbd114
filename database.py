"""SQLite mirror of the relational target schema.

The mirror lets migrations, rollup rebuilds and audits run without network
access, and backs the test-suite.  Tables follow the declared column lists in
:mod:`services.projection`; structured values are stored as JSON text.
"""
import logging
import sqlite3
from pathlib import Path
from typing import Optional, Union

from data_paths import ensure_data_root
from services.projection import DECLARED_COLUMNS

logger = logging.getLogger(__name__)

DATABASE_FILENAME = 'mirror.db'

PRIMARY_KEYS = {'daily_stats': 'date'}

INTEGER_COLUMNS = {
    'total_order_count', 'total_revenue', 'total_settled_amount', 'amount',
    'actual_delivery_cost', 'actual_delivery_cost_cash', 'delivery_profit',
    'quantity', 'unit_price', 'price', 'stock', 'points', 'total_spent',
    'order_count', 'employee_count', 'original_order_amount', 'total_amount',
    'total_tax_amount', 'photo_count', 'required_approval_level',
    'current_approval_level', 'fiscal_year', 'fiscal_month',
}

INDEXES = (
    ('orders', 'order_date'),
    ('orders', 'order_number'),
    ('orders', 'branch_id'),
)


def primary_key_for(table: str) -> str:
    return PRIMARY_KEYS.get(table, 'id')


def get_db_connection(path: Optional[Union[str, Path]] = None):
    """Open a connection to the mirror database (``:memory:`` is allowed)."""
    if path is None:
        path = ensure_data_root() / DATABASE_FILENAME
    target = str(path)
    if target != ':memory:':
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(target, timeout=30.0, isolation_level='DEFERRED')
    if target != ':memory:':
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def _column_type(column: str) -> str:
    return 'INTEGER' if column in INTEGER_COLUMNS else 'TEXT'


def init_db(conn: sqlite3.Connection) -> None:
    """Create missing tables and add columns introduced since the last run."""
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    for table, columns in DECLARED_COLUMNS.items():
        key = primary_key_for(table)
        if table not in existing_tables:
            definitions = []
            for column in columns:
                if column == key:
                    definitions.append(f"{column} TEXT PRIMARY KEY")
                else:
                    definitions.append(f"{column} {_column_type(column)}")
            if key not in columns:
                definitions.insert(0, f"{key} TEXT PRIMARY KEY")
            cursor.execute(f"CREATE TABLE {table} ({', '.join(definitions)})")
            logger.info("Created mirror table %s", table)
            continue

        cursor.execute(f"PRAGMA table_info({table})")
        present = {row[1] for row in cursor.fetchall()}
        for column in columns:
            if column not in present:
                cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {_column_type(column)}")
                logger.info("Added column %s.%s", table, column)

    for table, column in INDEXES:
        cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table} ({column})")

    conn.commit()
