import sqlite3

import pytest

from finance_tracker.db import CompatConnection, KeyedRow, connect_db, parse_database_config, row_to_dict
from finance_tracker.db_migrations import (
    add_column_if_missing,
    apply_migrations,
    ensure_table,
    get_db_health,
    migration_001,
    migration_002,
)


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []
        self.params = []
        self.next_row = None

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        self.params.append(params)
        return _FakeCursor(one=self.next_row)


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 3
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [1, 2, 3]


def test_upgrade_from_version_2_keeps_transactions(tmp_path):
    db_path = tmp_path / "v2.sqlite"
    conn = connect_db(parse_database_config(str(db_path)))
    migration_001(conn)
    migration_002(conn)
    conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
    conn.execute("INSERT INTO schema_version VALUES (1, '2024-01-01T00:00:00Z'), (2, '2024-01-01T00:00:00Z')")
    conn.execute("INSERT INTO users (username, password_hash) VALUES ('alice', 'hash')")
    conn.execute("INSERT INTO accounts (user_id, name) VALUES (1, 'Checking')")
    conn.execute(
        "INSERT INTO transactions (user_id, account_id, type, amount, currency, transaction_date) "
        "VALUES (1, 1, 'expense', 12.5, 'USD', '2024-01-02')"
    )
    conn.commit()
    conn.close()

    before = get_db_health(str(db_path))
    assert before["ok"] is False
    assert before["missing_columns"]["transactions"] == ["import_id", "linked_transaction_id"]

    apply_migrations(str(db_path))

    assert get_db_health(str(db_path))["ok"] is True
    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT amount, linked_transaction_id, import_id FROM transactions").fetchone()
    conn.close()
    assert row == (12.5, None, None)


def test_health_reports_missing_schema(tmp_path):
    health = get_db_health(str(tmp_path / "blank.sqlite"))

    assert health["ok"] is False
    assert health["schema_version"] == 0
    assert "transactions" in health["missing_tables"]
    assert "idx_import_staging_import_id" in health["missing_indexes"]


def test_transactions_reject_non_positive_amounts(tmp_path):
    db_path = tmp_path / "checks.sqlite"
    apply_migrations(str(db_path))
    conn = sqlite3.connect(db_path)
    conn.execute("INSERT INTO users (username, password_hash) VALUES ('alice', 'hash')")
    conn.execute("INSERT INTO accounts (user_id, name) VALUES (1, 'Checking')")

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO transactions (user_id, account_id, type, amount, currency, transaction_date) "
            "VALUES (1, 1, 'expense', -3, 'USD', '2024-01-02')"
        )
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO transactions (user_id, account_id, type, amount, currency, transaction_date) "
            "VALUES (1, 1, 'refund', 3, 'USD', '2024-01-02')"
        )
    conn.close()


def test_postgres_column_and_table_helpers():
    conn = _RecordingPostgresConnection()

    add_column_if_missing(conn, "transactions", "import_id TEXT")
    ensure_table(conn, "CREATE TABLE IF NOT EXISTS t (id INTEGER PRIMARY KEY AUTOINCREMENT)")

    assert conn.statements == [
        "ALTER TABLE transactions ADD COLUMN IF NOT EXISTS import_id TEXT",
        "CREATE TABLE IF NOT EXISTS t (id BIGSERIAL PRIMARY KEY)",
    ]


def test_postgres_connection_rewrites_placeholders_and_returns_ids():
    raw = _RecordingPostgresConnection()
    raw.next_row = (42,)
    conn = CompatConnection(raw, "postgres")

    conn.execute("SELECT * FROM accounts WHERE id = ? AND user_id = ?", [1, 2])
    new_id = conn.insert("INSERT INTO goals (user_id, name) VALUES (?, ?);", (1, "Trip"))

    assert new_id == 42
    assert raw.statements == [
        "SELECT * FROM accounts WHERE id = %s AND user_id = %s",
        "INSERT INTO goals (user_id, name) VALUES (%s, %s) RETURNING id",
    ]
    assert raw.params == [(1, 2), (1, "Trip")]


def test_keyed_row_reads_by_name_and_position():
    row = KeyedRow(("id", "name"), (7, "Trip"))

    assert row["name"] == "Trip"
    assert row[0] == 7
    assert row_to_dict(row) == {"id": 7, "name": "Trip"}
    assert row_to_dict(None) is None


def test_parse_database_config_prefers_postgres_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@localhost:5432/finance")

    config = parse_database_config("instance/finance_tracker.sqlite")

    assert config["backend"] == "postgres"
    assert config["database_url"] == "postgresql://user:pw@localhost:5432/finance"

    monkeypatch.delenv("DATABASE_URL")
    assert parse_database_config("instance/finance_tracker.sqlite")["backend"] == "sqlite"
