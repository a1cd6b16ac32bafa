"""
SQLite record store for PSA certification data, grading orders, snipes and user tokens.

The store is a thin row-access layer. A connection handle is opened by the
caller (see open_record_store) and passed to the cache and lifecycle
components; nothing here keeps module-level state.
"""
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional

SCHEMA = """
CREATE TABLE IF NOT EXISTS card_psa_data (
    cert_number TEXT PRIMARY KEY,
    grade TEXT,
    grade_description TEXT,
    total_population INTEGER NOT NULL DEFAULT 0,
    population_higher INTEGER NOT NULL DEFAULT 0,
    spec_id TEXT,
    year TEXT,
    brand TEXT,
    series TEXT,
    card_number TEXT,
    description TEXT,
    psa10_count INTEGER NOT NULL DEFAULT 0,
    psa9_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS psa_grading_orders (
    order_number TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    order_is_pending INTEGER,
    order_in_assembly INTEGER,
    order_is_in_progress INTEGER,
    grades_ready INTEGER,
    shipped INTEGER,
    ship_tracking_number TEXT,
    ship_date TEXT,
    estimated_completion_date TEXT,
    last_checked TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snipes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    item_title TEXT,
    max_bid TEXT NOT NULL,
    current_bid TEXT,
    bid_strategy TEXT NOT NULL DEFAULT 'last',
    end_time TEXT,
    status TEXT NOT NULL,
    bid_placed_at TEXT,
    bid_response TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_snipes_user ON snipes (user_id, status);

CREATE TABLE IF NOT EXISTS user_tokens (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, provider)
);
"""

KEY_COLUMNS: dict[str, tuple[str, ...]] = {
    "card_psa_data": ("cert_number",),
    "psa_grading_orders": ("order_number",),
    "snipes": ("id",),
    "user_tokens": ("user_id", "provider"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO timestamp; naive values are treated as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordStore:
    """Row access over one sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self._columns: dict[str, set[str]] = {}

    def init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)

    def _check(self, table: str, columns: Iterable[str]) -> None:
        if table not in KEY_COLUMNS:
            raise ValueError(f"Unknown table: {table}")
        if table not in self._columns:
            rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = {row["name"] for row in rows}
        unknown = set(columns) - self._columns[table]
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")

    def _key_clause(self, table: str, key: Any) -> tuple[str, list]:
        key_cols = KEY_COLUMNS[table]
        values = list(key) if isinstance(key, tuple) else [key]
        if len(values) != len(key_cols):
            raise ValueError(f"{table} key needs {len(key_cols)} value(s)")
        clause = " AND ".join(f"{col} = ?" for col in key_cols)
        return clause, values

    def get(self, table: str, key: Any) -> Optional[dict]:
        """Fetch one row by primary key, or None."""
        self._check(table, ())
        clause, params = self._key_clause(table, key)
        row = self.conn.execute(f"SELECT * FROM {table} WHERE {clause}", params).fetchone()
        return dict(row) if row else None

    def select(self, table: str, order_by: Optional[str] = None, **filters) -> list[dict]:
        self._check(table, filters)
        sql = f"SELECT * FROM {table}"
        if filters:
            sql += " WHERE " + " AND ".join(f"{col} = ?" for col in filters)
        if order_by:
            column = order_by.lstrip("-")
            self._check(table, [column])
            sql += f" ORDER BY {column} {'DESC' if order_by.startswith('-') else 'ASC'}"
        rows = self.conn.execute(sql, list(filters.values())).fetchall()
        return [dict(row) for row in rows]

    def insert(self, table: str, record: dict) -> dict:
        self._check(table, record)
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self.conn:
            self.conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                list(record.values()),
            )
        return self.get(table, tuple(record[col] for col in KEY_COLUMNS[table]))

    def upsert(self, table: str, record: dict) -> dict:
        """Insert or replace the row identified by the table's key columns."""
        self._check(table, record)
        key_cols = KEY_COLUMNS[table]
        missing = [col for col in key_cols if not record.get(col)]
        if missing:
            raise ValueError(f"upsert into {table} requires {missing}")

        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        updates = ", ".join(
            f"{col} = excluded.{col}" for col in record if col not in key_cols
        )
        sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) ON CONFLICT ({', '.join(key_cols)})"
        sql += f" DO UPDATE SET {updates}" if updates else " DO NOTHING"
        with self.conn:
            self.conn.execute(sql, list(record.values()))
        return self.get(table, tuple(record[col] for col in key_cols))

    def update(self, table: str, key: Any, fields: dict) -> bool:
        """Unconditional partial update. Returns True if a row changed."""
        self._check(table, fields)
        clause, params = self._key_clause(table, key)
        assignments = ", ".join(f"{col} = ?" for col in fields)
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {clause}",
                list(fields.values()) + params,
            )
        return cursor.rowcount > 0

    def conditional_update(
        self,
        table: str,
        key: Any,
        expected_statuses: Iterable[str],
        fields: dict,
    ) -> bool:
        """
        Compare-and-swap on the status column.

        Applies fields only if the row's current status is one of
        expected_statuses. The single UPDATE statement is the ordering
        guarantee: of two concurrent callers exactly one sees rowcount 1.
        """
        expected = list(expected_statuses)
        if not expected:
            raise ValueError("expected_statuses must not be empty")
        self._check(table, list(fields) + ["status"])
        clause, params = self._key_clause(table, key)
        assignments = ", ".join(f"{col} = ?" for col in fields)
        status_in = ", ".join("?" for _ in expected)
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {clause} AND status IN ({status_in})",
                list(fields.values()) + params + expected,
            )
        return cursor.rowcount == 1

    def close(self) -> None:
        self.conn.close()


def connect_record_store(path: str) -> RecordStore:
    """Open a store on path (":memory:" works) and create the schema. Caller closes it."""
    if path != ":memory:":
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
    store = RecordStore(sqlite3.connect(path, timeout=10))
    try:
        store.init_schema()
    except sqlite3.Error:
        store.close()
        raise
    return store


@contextmanager
def open_record_store(path: str) -> Iterator[RecordStore]:
    store = connect_record_store(path)
    try:
        yield store
    finally:
        store.close()
