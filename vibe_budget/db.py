import os
import re
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


POSTGRES_SCHEMES = ("postgres://", "postgresql://")
SQLITE_BUSY_TIMEOUT_MS = 5000

# A quoted literal or a bare qmark placeholder.
_QMARK_TOKEN_RE = re.compile(r"'(?:[^']|'')*'|\?")

if psycopg is not None:
    DATABASE_ERRORS = (sqlite3.Error, psycopg.Error)
    INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)
else:
    DATABASE_ERRORS = (sqlite3.Error,)
    INTEGRITY_ERRORS = (sqlite3.IntegrityError,)


class DbRow:
    """Postgres result row readable by column name, like ``sqlite3.Row``."""

    __slots__ = ("_index", "_values")

    def __init__(self, columns, values):
        self._index = {name: position for position, name in enumerate(columns)}
        self._values = tuple(values)

    def __getitem__(self, key):
        if isinstance(key, str):
            key = self._index[key]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._index)


class DbCursor:
    def __init__(self, cursor):
        self._cursor = cursor
        self.rowcount = getattr(cursor, "rowcount", -1)

    def _wrap(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        columns = [getattr(column, "name", None) or column[0] for column in self._cursor.description or []]
        return DbRow(columns, row)

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


class DbConnection:
    """One connection with qmark SQL on both SQLite and Postgres."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return DbCursor(self._conn.execute(sql, params))

    def insert(self, sql, params=None):
        """Run an INSERT and return the id of the new row."""
        if self.backend == "postgres":
            return self.execute(f"{sql.rstrip().rstrip(';')} RETURNING id", params).fetchone()[0]
        return self._conn.execute(sql, params or ()).lastrowid

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


def to_pyformat(sql):
    """Turn ``?`` placeholders into ``%s``, leaving quoted literals alone."""
    escaped = sql.replace("%", "%%")
    return _QMARK_TOKEN_RE.sub(lambda match: "%s" if match.group(0) == "?" else match.group(0), escaped)


def rewrite_sql(backend, sql, params):
    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    if backend == "postgres":
        sql = to_pyformat(sql)
    return sql, params


def is_postgres_url(value):
    return bool(value) and value.startswith(POSTGRES_SCHEMES)


def parse_database_config(database_path=None, database_url=None):
    """Pick the backend: a Postgres URL (argument or ``DATABASE_URL``) wins over the SQLite path."""
    url = (database_url or os.environ.get("DATABASE_URL", "")).strip()
    if is_postgres_url(url):
        return {
            "backend": "postgres",
            "database_url": url,
            "database_name": urlparse(url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }
    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        return DbConnection(psycopg.connect(config["database_url"], row_factory=tuple_row), "postgres")

    path = config["database_path"]
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    return DbConnection(conn, "sqlite")
