import argparse
from datetime import datetime

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "accounts": {
        "columns": {"id", "user_id", "name", "type", "currency", "balance", "created_at"},
        "indexes": {"idx_accounts_user_id"},
    },
    "categories": {
        "columns": {"id", "user_id", "name", "type"},
        "indexes": set(),
    },
    "goals": {
        "columns": {"id", "user_id", "name", "current_amount", "target_amount", "status"},
        "indexes": set(),
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "account_id",
            "category_id",
            "type",
            "amount",
            "currency",
            "description",
            "notes",
            "transaction_date",
            "frequency",
            "goal_id",
            "goal_amount",
            "goal_allocation_type",
            "linked_transaction_id",
            "import_id",
            "created_at",
        },
        "indexes": {
            "idx_transactions_user_date",
            "idx_transactions_account_id",
            "idx_transactions_import_id",
        },
    },
    "audit_logs": {
        "columns": {"id", "user_id", "action", "entity", "entity_id", "meta_json", "created_at"},
        "indexes": set(),
    },
    "import_sessions": {
        "columns": {
            "id",
            "user_id",
            "headers_json",
            "mapping_json",
            "stage",
            "warning",
            "total_rows",
            "snapshot_json",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_import_sessions_created_at"},
    },
    "import_staging": {
        "columns": {"id", "import_id", "user_id", "row_index", "created_at", "row_json", "status"},
        "indexes": {"idx_import_staging_import_id", "idx_import_staging_created_at"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif column not in get_table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def db_now_text(conn):
    if backend_name(conn) == "postgres":
        return "(CURRENT_TIMESTAMP::text)"
    return "CURRENT_TIMESTAMP"


def migration_001(conn):
    now = db_now_text(conn)
    ensure_table(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT {now}
        )
        """,
    )
    ensure_table(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'checking',
            currency TEXT NOT NULL DEFAULT 'USD',
            balance REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT {now},
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
            UNIQUE(user_id, name, type),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS goals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            current_amount REAL NOT NULL DEFAULT 0,
            target_amount REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            category_id INTEGER,
            type TEXT NOT NULL
                CHECK (type IN ('income', 'expense', 'transfer-sender', 'transfer-receiver')),
            amount REAL NOT NULL CHECK (amount > 0),
            currency TEXT NOT NULL,
            description TEXT,
            notes TEXT,
            transaction_date TEXT NOT NULL,
            frequency TEXT NOT NULL DEFAULT 'none',
            goal_id INTEGER,
            goal_amount REAL,
            goal_allocation_type TEXT,
            created_at TEXT NOT NULL DEFAULT {now},
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (account_id) REFERENCES accounts (id),
            FOREIGN KEY (category_id) REFERENCES categories (id),
            FOREIGN KEY (goal_id) REFERENCES goals (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_accounts_user_id",
        "CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_date",
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, transaction_date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_account_id",
        "CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id)",
    )
    ensure_table(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            action TEXT NOT NULL,
            entity TEXT,
            entity_id TEXT,
            meta_json TEXT,
            created_at TEXT NOT NULL DEFAULT {now},
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_sessions (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            headers_json TEXT NOT NULL,
            mapping_json TEXT NOT NULL,
            stage TEXT NOT NULL DEFAULT 'mapping',
            warning TEXT,
            total_rows INTEGER NOT NULL DEFAULT 0,
            snapshot_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_staging (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            row_index INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            row_json TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'preview',
            UNIQUE(import_id, row_index)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_sessions_created_at",
        "CREATE INDEX IF NOT EXISTS idx_import_sessions_created_at ON import_sessions(created_at)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_import_id",
        "CREATE INDEX IF NOT EXISTS idx_import_staging_import_id ON import_staging(import_id)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_created_at",
        "CREATE INDEX IF NOT EXISTS idx_import_staging_created_at ON import_staging(created_at)",
    )


def migration_003(conn):
    # Transfer pairs and per-import bookkeeping.
    add_column_if_missing(conn, "transactions", "linked_transaction_id INTEGER")
    add_column_if_missing(conn, "transactions", "import_id TEXT")
    create_index_if_missing(
        conn,
        "idx_transactions_import_id",
        "CREATE INDEX IF NOT EXISTS idx_transactions_import_id ON transactions(import_id)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(get_db_health(args.db_path))


if __name__ == "__main__":
    main()
