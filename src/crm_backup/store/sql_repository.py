"""
Generic SQL repository driven by the entity registry.

One implementation serves every entity type and both back ends. The
differences between SQLite and SQL Server (identifier quoting, DDL types,
transaction statements, explicit-id inserts) live in a SqlDialect.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.exceptions import DuplicateKeyError, RecordValidationError, RepositoryError, StoreError
from ..core.models import Record, WriteAction, WriteResult
from .base import Repository, Transaction, TransactionManager
from .registry import Column, EntityDefinition, EntityRegistry, utc_now_iso

logger = logging.getLogger(__name__)

UPDATED_AT = "updatedAt"


def is_valid_identifier(name: str) -> bool:
    """Strict whitelist check for table and schema names."""
    if not name or len(name) > 128:
        return False
    return bool(re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name))


class SqlDialect(ABC):
    """
    Back-end specific SQL. Subclasses override what differs.
    """

    name = "sql"
    driver_errors: Tuple[type, ...] = ()
    integrity_errors: Tuple[type, ...] = ()

    def quote(self, identifier: str) -> str:
        return f'"{identifier}"'

    def table_name(self, table: str) -> str:
        return self.quote(table)

    @abstractmethod
    def column_type(self, column: Column, indexed: bool = False) -> str:
        pass

    @abstractmethod
    def primary_key_ddl(self, column: Column) -> str:
        pass

    @abstractmethod
    def is_duplicate_key(self, error: Exception) -> bool:
        """
        Whether an integrity error is a unique or primary key collision.

        Foreign key and NOT NULL violations are integrity errors too, but
        they are real record errors.
        """
        pass

    def create_table_sql(self, definition: EntityDefinition, registry: EntityRegistry) -> str:
        """CREATE TABLE statement for one entity definition."""
        natural = [definition.column(name) for name in definition.natural_key]
        indexed = {c.name for c in natural} if len(natural) > 1 else set()

        lines = []
        for column in definition.columns:
            if column.primary_key:
                lines.append(f"{self.quote(column.column)} {self.primary_key_ddl(column)}")
                continue
            column_type = self.column_type(column, column.unique or column.name in indexed)
            ddl = f"{self.quote(column.column)} {column_type}"
            if column.required:
                ddl += " NOT NULL"
            if column.unique:
                ddl += " UNIQUE"
            if column.references and column.references in registry:
                parent = registry.get(column.references)
                ddl += (
                    f" REFERENCES {self.table_name(parent.table)}"
                    f"({self.quote(parent.primary_key.column)})"
                )
            lines.append(ddl)

        if len(natural) > 1:
            cols = ", ".join(self.quote(c.column) for c in natural)
            lines.append(f"UNIQUE ({cols})")

        body = ",\n    ".join(lines)
        return f"CREATE TABLE {self.table_name(definition.table)} (\n    {body}\n)"

    def create_table_if_missing_sql(self, definition: EntityDefinition, registry: EntityRegistry) -> str:
        return self.create_table_sql(definition, registry).replace(
            "CREATE TABLE", "CREATE TABLE IF NOT EXISTS", 1
        )

    def drop_table_sql(self, definition: EntityDefinition) -> str:
        return f"DROP TABLE IF EXISTS {self.table_name(definition.table)}"

    @abstractmethod
    def begin(self, conn) -> None:
        pass

    def commit(self, conn) -> None:
        conn.commit()

    def rollback(self, conn) -> None:
        conn.rollback()

    @abstractmethod
    def insert_row(
        self,
        tx: "SqlTransaction",
        definition: EntityDefinition,
        row: Dict[str, Any],
    ) -> Any:
        """
        Insert one row and return its primary key.

        Args:
            tx: Open transaction
            definition: Entity definition of the row
            row: Column name to database value; includes the primary key
                column only when the id is explicit
        """
        pass


class SqlTransaction(Transaction):
    """Transaction on a single DB-API connection."""

    def __init__(self, database: "SqlDatabase"):
        self._conn = database.conn
        self._dialect = database.dialect
        self._active = False
        try:
            self._dialect.begin(self._conn)
        except self._dialect.driver_errors as e:
            raise StoreError(f"Failed to begin transaction: {e}") from e
        self._active = True
        logger.debug(f"Began {self._dialect.name} transaction")

    @property
    def is_active(self) -> bool:
        return self._active

    def execute(self, sql: str, params: Sequence[Any] = ()):
        """Execute a statement inside this transaction and return the cursor."""
        if not self._active:
            raise StoreError("Transaction is no longer active")
        cursor = self._conn.cursor()
        cursor.execute(sql, tuple(params))
        return cursor

    def commit(self) -> None:
        if not self._active:
            raise StoreError("Transaction is no longer active")
        try:
            self._dialect.commit(self._conn)
        except self._dialect.driver_errors as e:
            # Still active: the caller is expected to roll back.
            raise StoreError(f"Commit failed: {e}") from e
        self._active = False
        logger.debug("Transaction committed")

    def rollback(self) -> None:
        if not self._active:
            return
        try:
            self._dialect.rollback(self._conn)
        except self._dialect.driver_errors as e:
            raise StoreError(f"Rollback failed: {e}") from e
        finally:
            self._active = False
        logger.debug("Transaction rolled back")


class SqlRepository(Repository):
    """
    Repository for one entity type backed by one SQL table.
    """

    def __init__(self, database: "SqlDatabase", definition: EntityDefinition):
        self._database = database
        self._dialect = database.dialect
        self.definition = definition

    @property
    def entity_type(self) -> str:
        return self.definition.name

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_all(self) -> List[Record]:
        pk = self.definition.primary_key
        sql = (
            f"SELECT * FROM {self._dialect.table_name(self.definition.table)} "
            f"ORDER BY {self._dialect.quote(pk.column)}"
        )
        try:
            rows = self._database.query(sql)
        except self._dialect.driver_errors as e:
            raise RepositoryError(self.entity_type, str(e)) from e
        return [Record(self.entity_type, self._from_row(row)) for row in rows]

    def count(self) -> int:
        sql = f"SELECT COUNT(*) AS n FROM {self._dialect.table_name(self.definition.table)}"
        try:
            rows = self._database.query(sql)
        except self._dialect.driver_errors as e:
            raise RepositoryError(self.entity_type, str(e)) from e
        return int(rows[0]["n"])

    def find_existing(self, tx: SqlTransaction, record: Record) -> Optional[Dict[str, Any]]:
        values = dict(self._check_record(record))
        for name in self.definition.natural_key:
            column = self.definition.column(name)
            # A constant default is the key the insert would store.
            if values.get(name) is None and column.default is not None and not callable(column.default):
                values[name] = column.default
        key = self.definition.natural_key_values(values)
        if key is not None:
            lookup = [(self.definition.column(n), v) for n, v in zip(self.definition.natural_key, key)]
        else:
            # Nullable natural key part: an explicit id is all there is to match on.
            pk = self.definition.primary_key
            missing = [self.definition.column(n) for n in self.definition.natural_key if values.get(n) is None]
            if values.get(pk.name) is None or any(c.required or c.primary_key for c in missing):
                return None
            lookup = [(pk, values[pk.name])]

        clauses = []
        params = []
        for column, value in lookup:
            clauses.append(f"{self._dialect.quote(column.column)} = ?")
            params.append(self._to_db(column, value))

        sql = (
            f"SELECT * FROM {self._dialect.table_name(self.definition.table)} "
            f"WHERE {' AND '.join(clauses)}"
        )
        try:
            cursor = tx.execute(sql, params)
            row = cursor.fetchone()
            if row is None:
                return None
            names = [d[0] for d in cursor.description]
        except self._dialect.driver_errors as e:
            raise StoreError(f"Lookup failed for {self.entity_type}: {e}") from e
        return self._from_row(dict(zip(names, row)))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, tx: SqlTransaction, record: Record) -> WriteResult:
        values = dict(self._check_record(record))
        generated = []

        for column in self.definition.columns:
            if column.primary_key:
                continue
            if values.get(column.name) is None and column.default is not None:
                values[column.name] = column.default_value()
                if column.credential:
                    generated.append(column.name)

        self._require(values)
        row = self._to_db_row(values)

        pk = self.definition.primary_key
        if row.get(pk.column) is None:
            row.pop(pk.column, None)

        try:
            primary_key = self._dialect.insert_row(tx, self.definition, row)
        except self._dialect.integrity_errors as e:
            if self._dialect.is_duplicate_key(e):
                raise DuplicateKeyError(
                    self.entity_type, f"Insert into {self.definition.table} collided: {e}"
                ) from e
            raise StoreError(f"Insert into {self.definition.table} failed: {e}") from e
        except self._dialect.driver_errors as e:
            raise StoreError(f"Insert into {self.definition.table} failed: {e}") from e

        return WriteResult(
            action=WriteAction.INSERTED,
            entity_type=self.entity_type,
            key=self.definition.key_label(values),
            primary_key=primary_key,
            generated_fields=generated,
        )

    def update(self, tx: SqlTransaction, existing: Dict[str, Any], record: Record) -> WriteResult:
        incoming = self._check_record(record)
        immutable = set(self.definition.immutable_fields)
        pk = self.definition.primary_key

        merged = dict(existing)
        for name, value in incoming.items():
            column = self.definition.column(name)
            if column is None or column.primary_key or name in immutable:
                continue
            merged[name] = value

        stamped = self.definition.column(UPDATED_AT) is not None and UPDATED_AT not in immutable
        if stamped:
            merged[UPDATED_AT] = utc_now_iso()
        self._require(merged)

        changes = {}
        for column in self.definition.columns:
            if column.primary_key or column.name in immutable:
                continue
            if column.name in incoming or (stamped and column.name == UPDATED_AT):
                changes[column.column] = self._to_db(column, merged.get(column.name))

        if changes:
            assignments = ", ".join(f"{self._dialect.quote(c)} = ?" for c in changes)
            sql = (
                f"UPDATE {self._dialect.table_name(self.definition.table)} "
                f"SET {assignments} WHERE {self._dialect.quote(pk.column)} = ?"
            )
            try:
                tx.execute(sql, list(changes.values()) + [existing[pk.name]])
            except self._dialect.driver_errors as e:
                raise StoreError(f"Update of {self.definition.table} failed: {e}") from e

        return WriteResult(
            action=WriteAction.UPDATED,
            entity_type=self.entity_type,
            key=self.definition.key_label(merged),
            primary_key=existing[pk.name],
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _check_record(self, record: Record) -> Dict[str, Any]:
        if not isinstance(record.values, dict):
            raise RecordValidationError(
                self.entity_type,
                f"Record must be an object, got {type(record.values).__name__}",
            )
        return record.values

    def _require(self, values: Dict[str, Any]) -> None:
        missing = [
            c.name for c in self.definition.columns
            if c.required and values.get(c.name) is None
        ]
        if missing:
            raise RecordValidationError(
                self.entity_type,
                f"Missing required field(s): {', '.join(missing)}",
            )

    def _to_db_row(self, values: Dict[str, Any]) -> Dict[str, Any]:
        row = {}
        for column in self.definition.columns:
            if column.name in values:
                row[column.column] = self._to_db(column, values[column.name])
        unknown = set(values) - {c.name for c in self.definition.columns}
        if unknown:
            logger.debug(f"{self.entity_type}: ignoring unknown fields {sorted(unknown)}")
        return row

    def _to_db(self, column: Column, value: Any) -> Any:
        if value is None:
            return None
        try:
            if column.type == "json":
                return json.dumps(value, ensure_ascii=False)
            if column.type == "boolean":
                if isinstance(value, bool):
                    return int(value)
                if isinstance(value, int) and value in (0, 1):
                    return value
                raise ValueError(f"not a boolean: {value!r}")
            if column.type == "integer":
                if isinstance(value, bool):
                    raise ValueError(f"not an integer: {value!r}")
                if isinstance(value, float) and not value.is_integer():
                    raise ValueError(f"not an integer: {value!r}")
                return int(value)
            if column.type == "real":
                if isinstance(value, bool):
                    raise ValueError(f"not a number: {value!r}")
                return float(value)
            if column.type == "timestamp":
                if isinstance(value, (datetime, date)):
                    return value.isoformat()
                if not isinstance(value, str):
                    raise ValueError(f"not a timestamp: {value!r}")
                return value
            if isinstance(value, (dict, list)):
                raise ValueError("expected text, got a structured value")
            return str(value)
        except (TypeError, ValueError) as e:
            raise RecordValidationError(
                self.entity_type, f"Invalid value for '{column.name}': {e}"
            ) from e

    def _from_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for column in self.definition.columns:
            if column.column not in row:
                continue
            values[column.name] = self._from_db(column, row[column.column])
        return values

    @staticmethod
    def _from_db(column: Column, value: Any) -> Any:
        if value is None:
            return None
        if column.type == "json":
            try:
                return json.loads(value)
            except (TypeError, ValueError):
                return value
        if column.type == "boolean":
            return bool(value)
        if column.type == "integer":
            return int(value)
        if column.type == "real":
            return float(value)
        if column.type == "timestamp" and isinstance(value, (datetime, date)):
            return value.isoformat()
        return value


class SqlDatabase(TransactionManager):
    """
    A connection plus the registry it serves.

    Subclasses open the connection and pick the dialect.
    """

    dialect: SqlDialect

    def __init__(self, registry: EntityRegistry):
        self.registry = registry
        self.conn = None
        self._repositories: Dict[str, SqlRepository] = {}

    def begin(self) -> SqlTransaction:
        return SqlTransaction(self)

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a read-only statement and return rows as dicts."""
        cursor = self.conn.cursor()
        cursor.execute(sql, tuple(params))
        names = [d[0] for d in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def repository(self, entity_type: str) -> SqlRepository:
        if entity_type not in self._repositories:
            definition = self.registry.get(entity_type)
            self._repositories[entity_type] = SqlRepository(self, definition)
        return self._repositories[entity_type]

    def repositories(self) -> Dict[str, SqlRepository]:
        """Repository per entity type, in registry order."""
        return {name: self.repository(name) for name in self.registry.names}

    def init_schema(self) -> None:
        """Create every registry table that does not exist yet, parents first."""
        tx = self.begin()
        try:
            for name in self.registry.import_order():
                definition = self.registry.get(name)
                tx.execute(self.dialect.create_table_if_missing_sql(definition, self.registry))
            tx.commit()
        except self.dialect.driver_errors as e:
            tx.rollback()
            raise StoreError(f"Failed to create schema: {e}") from e
        logger.info(f"Initialized {self.dialect.name} schema ({len(self.registry)} tables)")

    def drop_schema(self) -> None:
        """Drop every registry table, children first."""
        tx = self.begin()
        try:
            for name in reversed(self.registry.import_order()):
                tx.execute(self.dialect.drop_table_sql(self.registry.get(name)))
            tx.commit()
        except self.dialect.driver_errors as e:
            tx.rollback()
            raise StoreError(f"Failed to drop schema: {e}") from e
        logger.info(f"Dropped {self.dialect.name} schema")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logger.debug(f"Closed {self.dialect.name} connection")

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.close()
