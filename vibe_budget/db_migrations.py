from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "password_hash", "name", "native_currency", "created_at"},
        "indexes": set(),
    },
    "households": {
        "columns": {"id", "name", "created_at"},
        "indexes": set(),
    },
    "household_members": {
        "columns": {"id", "household_id", "user_id", "role", "created_at"},
        "indexes": set(),
    },
    "household_invites": {
        "columns": {"id", "household_id", "code", "email", "created_by_user_id", "created_at"},
        "indexes": set(),
    },
    "banks": {
        "columns": {"id", "household_id", "user_id", "name", "color", "created_at"},
        "indexes": set(),
    },
    "currencies": {
        "columns": {"id", "household_id", "user_id", "code", "symbol", "name", "is_native", "created_at"},
        "indexes": set(),
    },
    "categories": {
        "columns": {
            "id",
            "household_id",
            "user_id",
            "name",
            "type",
            "color",
            "icon",
            "description",
            "is_system_category",
            "created_at",
        },
        "indexes": {"idx_categories_household_id"},
    },
    "user_keywords": {
        "columns": {"id", "household_id", "user_id", "keyword", "category_id", "created_at"},
        "indexes": {"idx_user_keywords_household_id"},
    },
    "transactions": {
        "columns": {
            "id",
            "household_id",
            "user_id",
            "bank_id",
            "category_id",
            "date",
            "description",
            "amount",
            "currency",
            "type",
            "source",
            "original_data",
            "category_source",
            "ai_suggestion",
            "notes",
            "created_at",
            "updated_at",
        },
        "indexes": {
            "idx_transactions_household_date",
            "idx_transactions_category_id",
            "idx_transactions_bank_id",
        },
    },
    "audit_logs": {
        "columns": {"id", "household_id", "user_id", "action", "entity", "entity_id", "meta_json", "created_at"},
        "indexes": set(),
    },
}


# Existence checks per backend, each taking the object name.
CATALOG_QUERIES = {
    "sqlite": {
        "table": "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        "index": "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
    },
    "postgres": {
        "table": (
            "SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = ?"
        ),
        "index": "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def _catalog_has(conn, kind, name):
    query = CATALOG_QUERIES[backend_name(conn)][kind]
    return conn.execute(query, (name,)).fetchone() is not None


def table_exists(conn, name):
    return _catalog_has(conn, "table", name)


def index_exists(conn, name):
    return _catalog_has(conn, "index", name)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}
    # table_info rows are (cid, name, type, notnull, default, pk)
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def add_column_if_missing(conn, table, column_sql):
    name = column_sql.split()[0]
    if name in get_table_columns(conn, table):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_sql}")


def create_index_if_missing(conn, name, create_sql):
    if not index_exists(conn, name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            name TEXT NOT NULL,
            native_currency TEXT NOT NULL DEFAULT 'RON',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS households (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS household_members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL UNIQUE,
            role TEXT NOT NULL DEFAULT 'member',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS household_invites (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            code TEXT UNIQUE NOT NULL,
            email TEXT,
            created_by_user_id INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (created_by_user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS banks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER,
            name TEXT NOT NULL,
            color TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS currencies (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER,
            code TEXT NOT NULL,
            symbol TEXT NOT NULL,
            name TEXT,
            is_native INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(household_id, code),
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'expense',
            color TEXT,
            icon TEXT,
            description TEXT,
            is_system_category INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(household_id, name),
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS user_keywords (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER,
            keyword TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(household_id, keyword),
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER NOT NULL,
            user_id INTEGER,
            bank_id INTEGER,
            category_id INTEGER,
            date TEXT NOT NULL,
            description TEXT NOT NULL,
            amount REAL NOT NULL,
            currency TEXT NOT NULL DEFAULT 'RON',
            type TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'csv',
            original_data TEXT,
            category_source TEXT,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL,
            FOREIGN KEY (bank_id) REFERENCES banks (id) ON DELETE SET NULL,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE SET NULL
        )
        """,
    )


def migration_002(conn):
    create_index_if_missing(
        conn,
        "idx_transactions_household_date",
        "CREATE INDEX idx_transactions_household_date ON transactions(household_id, date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_category_id",
        "CREATE INDEX idx_transactions_category_id ON transactions(category_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_bank_id",
        "CREATE INDEX idx_transactions_bank_id ON transactions(bank_id)",
    )
    create_index_if_missing(
        conn,
        "idx_categories_household_id",
        "CREATE INDEX idx_categories_household_id ON categories(household_id)",
    )
    create_index_if_missing(
        conn,
        "idx_user_keywords_household_id",
        "CREATE INDEX idx_user_keywords_household_id ON user_keywords(household_id)",
    )


def migration_003(conn):
    # AI-assisted categorization stores its suggestion next to the row.
    add_column_if_missing(conn, "transactions", "ai_suggestion TEXT")
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            household_id INTEGER,
            user_id INTEGER,
            action TEXT NOT NULL,
            entity TEXT,
            entity_id INTEGER,
            meta_json TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (household_id) REFERENCES households (id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
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


def applied_versions(conn):
    _ensure_schema_version_table(conn)
    return {int(row[0]) for row in conn.execute("SELECT version FROM schema_version").fetchall()}


def current_schema_version(conn):
    return max(applied_versions(conn), default=0)


def _run_migrations(conn):
    done = applied_versions(conn)
    for version, migrate in MIGRATIONS:
        if version in done:
            continue
        try:
            migrate(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            f"Schema is incomplete after migrating: tables={health['missing_tables']} "
            f"columns={health['missing_columns']}"
        )


def _as_config(target):
    return target if isinstance(target, dict) else parse_database_config(target)


def apply_migrations(target):
    """Bring a database up to the latest schema version.

    ``target`` is an open connection (left open), a config dict from
    ``parse_database_config`` or a SQLite path.
    """
    if hasattr(target, "execute"):
        _run_migrations(target)
        return

    conn = connect_db(_as_config(target))
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    missing_tables = []
    missing_columns = {}
    missing_indexes = set()

    for table, expected in REQUIRED_TABLES.items():
        if table_exists(conn, table):
            present = get_table_columns(conn, table)
            missing_columns[table] = sorted(expected["columns"] - present)
            missing_indexes.update(name for name in expected["indexes"] if not index_exists(conn, name))
        else:
            missing_tables.append(table)
            missing_columns[table] = sorted(expected["columns"])
            missing_indexes.update(expected["indexes"])

    return {
        "ok": not (missing_tables or any(missing_columns.values()) or missing_indexes),
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(missing_indexes),
    }


def get_db_health(target):
    conn = connect_db(_as_config(target))
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()
