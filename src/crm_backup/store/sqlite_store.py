"""
SQLite back end for the CRM store.

Suitable for local use, single-node deployments and tests. Uses a single
connection in autocommit mode and issues BEGIN IMMEDIATE / COMMIT / ROLLBACK
itself, so one restore is exactly one SQLite transaction.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..core.exceptions import StoreError
from .registry import Column, EntityDefinition, EntityRegistry, default_registry
from .sql_repository import SqlDatabase, SqlDialect, SqlTransaction

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class SqliteDialect(SqlDialect):
    """SQLite flavour of the store SQL."""

    name = "sqlite"
    driver_errors = (sqlite3.Error,)
    integrity_errors = (sqlite3.IntegrityError,)

    _TYPES = {
        "integer": "INTEGER",
        "text": "TEXT",
        "real": "REAL",
        "boolean": "INTEGER",
        "timestamp": "TEXT",
        "json": "TEXT",
    }

    def column_type(self, column: Column, indexed: bool = False) -> str:
        return self._TYPES[column.type]

    def primary_key_ddl(self, column: Column) -> str:
        return "INTEGER PRIMARY KEY"

    def is_duplicate_key(self, error: Exception) -> bool:
        message = str(error)
        return message.startswith(("UNIQUE constraint failed", "PRIMARY KEY constraint failed"))

    def begin(self, conn) -> None:
        conn.execute("BEGIN IMMEDIATE")

    def commit(self, conn) -> None:
        conn.execute("COMMIT")

    def rollback(self, conn) -> None:
        conn.execute("ROLLBACK")

    def insert_row(self, tx: SqlTransaction, definition: EntityDefinition, row: Dict[str, Any]) -> Any:
        columns = ", ".join(self.quote(c) for c in row)
        placeholders = ", ".join("?" for _ in row)
        sql = f"INSERT INTO {self.table_name(definition.table)} ({columns}) VALUES ({placeholders})"
        cursor = tx.execute(sql, list(row.values()))
        pk = definition.primary_key.column
        if row.get(pk) is not None:
            return row[pk]
        return cursor.lastrowid


class SqliteDatabase(SqlDatabase):
    """
    CRM store in a SQLite file (or in memory).
    """

    dialect = SqliteDialect()

    def __init__(
        self,
        db_path: Union[str, Path] = MEMORY,
        registry: Optional[EntityRegistry] = None,
        auto_init: bool = True,
    ):
        """
        Initialize the SQLite store.

        Args:
            db_path: Path to the database file, or ":memory:"
            registry: Entity registry (defaults to the full CRM registry)
            auto_init: Whether to create tables automatically
        """
        super().__init__(registry or default_registry())
        self.db_path = db_path if db_path == MEMORY else Path(db_path)
        self._connect()

        if auto_init:
            self.init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            self.conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open SQLite database {self.db_path}: {e}") from e
        logger.debug(f"Connected to SQLite store: {self.db_path}")
