import os
import sqlite3
from pathlib import Path

try:
    import psycopg
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None

DB_ERRORS = (sqlite3.Error,) + ((psycopg.Error,) if psycopg is not None else ())


class KeyedRow(tuple):
    """Postgres result row readable by position or by column name, like sqlite3.Row."""

    def __new__(cls, columns, values):
        row = super().__new__(cls, values)
        row._columns = columns
        return row

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(self._columns.index(key))
        return super().__getitem__(key)

    def keys(self):
        return list(self._columns)


def keyed_row(cursor):
    # psycopg row factory: called once per result set.
    columns = tuple(column.name for column in cursor.description or ())

    def make_row(values):
        return KeyedRow(columns, values)

    return make_row


def to_postgres_sql(sql):
    return sql.replace("?", "%s")


class CompatConnection:
    """Accepts ``?`` placeholders on both backends and adds ``insert()``.

    Cursors are the driver's own; on Postgres the ``keyed_row`` factory gives
    rows the same access style sqlite3.Row has.
    """

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=()):
        if self.backend == "postgres":
            sql = to_postgres_sql(sql)
        return self._conn.execute(sql, tuple(params or ()))

    def insert(self, sql, params=()):
        """Run an INSERT and return the new row id."""
        if self.backend == "postgres":
            return self.execute(f"{sql.rstrip().rstrip(';')} RETURNING id", params).fetchone()[0]
        return self.execute(sql, params).lastrowid

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def parse_database_config(database_path=None):
    """Postgres when DATABASE_URL says so, otherwise the sqlite file at ``database_path``."""
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if db_url.startswith(("postgresql://", "postgres://")):
        return {"backend": "postgres", "database_url": db_url, "database_path": database_path}
    return {"backend": "sqlite", "database_url": None, "database_path": database_path}


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        return CompatConnection(psycopg.connect(config["database_url"], row_factory=keyed_row), "postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, "sqlite")
