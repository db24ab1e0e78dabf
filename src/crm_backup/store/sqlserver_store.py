"""
SQL Server back end for the CRM store.

Requires pyodbc (pip install crm-backup[sqlserver]).
"""

import logging
from typing import Any, Dict, Optional

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.exceptions import StoreError
from .registry import Column, EntityDefinition, EntityRegistry, default_registry
from .sql_repository import SqlDatabase, SqlDialect, SqlTransaction, is_valid_identifier

logger = logging.getLogger(__name__)


class SqlServerDialect(SqlDialect):
    """T-SQL flavour of the store SQL."""

    name = "sqlserver"

    def __init__(self, schema: str = "dbo"):
        if not is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")
        self.schema = schema
        if pyodbc is not None:
            self.driver_errors = (pyodbc.Error,)
            self.integrity_errors = (pyodbc.IntegrityError,)

    def quote(self, identifier: str) -> str:
        return f"[{identifier}]"

    def table_name(self, table: str) -> str:
        return f"[{self.schema}].[{table}]"

    def column_type(self, column: Column, indexed: bool = False) -> str:
        if column.type == "text":
            # Indexed text must fit in a key; everything else is unbounded.
            return "NVARCHAR(450)" if indexed else "NVARCHAR(MAX)"
        return {
            "integer": "BIGINT",
            "real": "FLOAT",
            "boolean": "BIT",
            "timestamp": "NVARCHAR(40)",
            "json": "NVARCHAR(MAX)",
        }[column.type]

    def primary_key_ddl(self, column: Column) -> str:
        return "BIGINT IDENTITY(1,1) PRIMARY KEY"

    def create_table_if_missing_sql(self, definition: EntityDefinition, registry: EntityRegistry) -> str:
        return (
            f"IF OBJECT_ID(N'{self.schema}.{definition.table}', N'U') IS NULL\n"
            f"{self.create_table_sql(definition, registry)}"
        )

    def drop_table_sql(self, definition: EntityDefinition) -> str:
        return (
            f"IF OBJECT_ID(N'{self.schema}.{definition.table}', N'U') IS NOT NULL\n"
            f"DROP TABLE {self.table_name(definition.table)}"
        )

    def is_duplicate_key(self, error: Exception) -> bool:
        # 2627: unique/primary key constraint, 2601: unique index
        message = str(error)
        return "(2627)" in message or "(2601)" in message

    def begin(self, conn) -> None:
        # pyodbc opens a transaction implicitly when autocommit is off.
        conn.autocommit = False

    def commit(self, conn) -> None:
        conn.commit()
        conn.autocommit = True

    def rollback(self, conn) -> None:
        conn.rollback()
        conn.autocommit = True

    def insert_row(self, tx: SqlTransaction, definition: EntityDefinition, row: Dict[str, Any]) -> Any:
        table = self.table_name(definition.table)
        pk = definition.primary_key.column
        columns = ", ".join(self.quote(c) for c in row)
        placeholders = ", ".join("?" for _ in row)

        if row.get(pk) is not None:
            tx.execute(f"SET IDENTITY_INSERT {table} ON")
            try:
                tx.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values()))
            finally:
                tx.execute(f"SET IDENTITY_INSERT {table} OFF")
            return row[pk]

        cursor = tx.execute(
            f"INSERT INTO {table} ({columns}) OUTPUT INSERTED.{self.quote(pk)} VALUES ({placeholders})",
            list(row.values()),
        )
        return cursor.fetchone()[0]


class SqlServerDatabase(SqlDatabase):
    """
    CRM store in SQL Server.
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "Crm",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "dbo",
        trust_server_certificate: bool = True,
        registry: Optional[EntityRegistry] = None,
        auto_init: bool = True,
    ):
        """
        Initialize the SQL Server store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema holding the CRM tables
            trust_server_certificate: Whether to trust self-signed certificates (for local Docker)
            registry: Entity registry (defaults to the full CRM registry)
            auto_init: Whether to create tables automatically
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerDatabase. "
                "Install with: pip install pyodbc"
            )
        super().__init__(registry or default_registry())
        self.dialect = SqlServerDialect(schema)

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        self._connect()

        if auto_init:
            self.init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self.conn = pyodbc.connect(self.connection_string, autocommit=True)
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise StoreError(f"Failed to connect to SQL Server: {e}") from e
        logger.debug("Connected to SQL Server")
