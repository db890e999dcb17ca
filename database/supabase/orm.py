import json
import logging
import os
import re
import sqlite3
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, Optional

import psycopg2
from psycopg2.extensions import register_adapter
from psycopg2.extras import Json

from utils.constants import DATABASE_URL, MIGRATIONS_DIR
from utils.database import as_utc

logger = logging.getLogger(__name__)

# JSONB columns receive plain dicts from the repositories.
register_adapter(dict, Json)

_NAMED_PARAM = re.compile(r"%\((\w+)\)s")


def is_sqlite(database_url: Optional[str]) -> bool:
    return bool(database_url) and database_url.startswith("sqlite://")


def _sqlite_path(database_url: str) -> str:
    # Accepts both sqlite:///abs/path and sqlite://path
    path = database_url[len("sqlite://"):]
    if path.startswith("//"):
        path = path[1:]
    return path


def _adapt_value(value: Any, sqlite: bool) -> Any:
    if isinstance(value, Enum):
        return value.value
    if not sqlite:
        return value
    if isinstance(value, datetime):
        # Fixed-width UTC text keeps lexical and chronological order identical.
        return as_utc(value).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def adapt_params(params: Optional[Mapping[str, Any]], sqlite: bool = False) -> dict:
    return {k: _adapt_value(v, sqlite) for k, v in (params or {}).items()}


class SQLiteCursor(sqlite3.Cursor):
    """Lets repositories use psycopg2's %(name)s placeholders against SQLite."""

    def execute(self, sql, parameters=()):
        sql = _NAMED_PARAM.sub(r":\1", sql).replace("%%", "%")
        sql = sql.replace("FOR UPDATE", "")
        if isinstance(parameters, Mapping):
            parameters = adapt_params(parameters, sqlite=True)
        return super().execute(sql, parameters)


class SQLiteConnection(sqlite3.Connection):
    def cursor(self, factory=SQLiteCursor):
        return super().cursor(factory)


def get_connection(database_url: Optional[str] = None):
    """Get database connection - supports both PostgreSQL and SQLite for testing."""
    database_url = database_url or DATABASE_URL
    if not database_url:
        raise RuntimeError("DATABASE_URL environment variable not set")

    if is_sqlite(database_url):
        conn = sqlite3.connect(
            _sqlite_path(database_url), timeout=30, factory=SQLiteConnection
        )
        conn.execute("PRAGMA foreign_keys = ON")
        return conn
    return psycopg2.connect(database_url)


def run_migrations(database_url: Optional[str] = None) -> None:
    database_url = database_url or DATABASE_URL
    logger.info("Starting database migrations...")
    sqlite = is_sqlite(database_url)

    migration_files = sorted(
        [f for f in os.listdir(MIGRATIONS_DIR) if f.endswith(".sql")]
    )
    if not migration_files:
        logger.info("No migration files found.")
        return

    conn = get_connection(database_url)
    cur = conn.cursor()
    try:
        for filename in migration_files:
            logger.info(f"Executing migration: {filename}")
            with open(os.path.join(MIGRATIONS_DIR, filename), "r") as f:
                sql_code = f.read()

            if sqlite:
                sql_code = _convert_postgres_to_sqlite(sql_code)

            try:
                if sqlite:
                    # SQLite doesn't support executing multiple statements at once
                    statements = [
                        stmt.strip() for stmt in sql_code.split(";") if stmt.strip()
                    ]
                    for statement in statements:
                        cur.execute(statement)
                else:
                    cur.execute(sql_code)
                conn.commit()
                logger.info(f"Successfully executed migration: {filename}")
            except Exception as e:
                conn.rollback()
                logger.error(f"Migration {filename} failed: {e}")
                raise
    finally:
        cur.close()
        conn.close()
    logger.info("Finished executing migrations.")


def _convert_postgres_to_sqlite(sql_code: str) -> str:
    """Convert PostgreSQL-specific SQL to SQLite-compatible SQL."""
    # Drop comment lines first so semicolons inside them don't split statements
    lines = [line for line in sql_code.split("\n") if not line.strip().startswith("--")]
    sql_code = "\n".join(lines)

    sql_code = sql_code.replace("UUID", "TEXT")
    sql_code = sql_code.replace("TIMESTAMP WITH TIME ZONE", "TEXT")
    sql_code = sql_code.replace("JSONB", "TEXT")
    sql_code = sql_code.replace("DECIMAL(15, 2)", "REAL")
    sql_code = sql_code.replace("DEFAULT '{}'::jsonb", "DEFAULT '{}'")
    sql_code = sql_code.replace("BOOLEAN NOT NULL DEFAULT FALSE", "INTEGER NOT NULL DEFAULT 0")
    sql_code = sql_code.replace("BOOLEAN NOT NULL DEFAULT TRUE", "INTEGER NOT NULL DEFAULT 1")
    sql_code = sql_code.replace("BOOLEAN", "INTEGER")
    sql_code = sql_code.replace("ON DELETE CASCADE", "")
    return sql_code
