"""
Relational store for CRM entities.

SQLite (SqliteDatabase) is the default back end. SQL Server
(SqlServerDatabase) needs pyodbc and is selected with backend="sqlserver"
or the CRM_DB_BACKEND environment variable.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .base import Repository, Transaction, TransactionManager
from .registry import Column, EntityDefinition, EntityRegistry, default_registry
from .sql_repository import SqlDatabase, SqlRepository
from .sqlite_store import SqliteDatabase

logger = logging.getLogger(__name__)


# Lazy import to avoid import errors when pyodbc is missing
def _get_sqlserver_database():
    from .sqlserver_store import SqlServerDatabase
    return SqlServerDatabase


def create_database(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
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
) -> SqlDatabase:
    """
    Factory function to open the configured store.

    Args:
        backend: 'sqlite' or 'sqlserver'. Defaults to CRM_DB_BACKEND env var or 'sqlite'.

        SQLite options:
            db_path: Path to SQLite database file

        SQL Server options:
            connection_string: Full ODBC connection string
            host, port, database, username, password, driver: Discrete connection settings
            schema: Schema holding the CRM tables
            trust_server_certificate: Trust self-signed certs

        registry: Entity registry (defaults to the full CRM registry)
        auto_init: Create missing tables

    Returns:
        Open database

    Raises:
        ValueError: If backend is not recognized
        ImportError: If pyodbc is required but missing
    """
    if backend is None:
        backend = os.environ.get("CRM_DB_BACKEND", "sqlite").lower()

    if backend == "sqlite":
        if db_path is None:
            db_path = os.environ.get("CRM_SQLITE_PATH", "local/crm.db")
        return SqliteDatabase(db_path=db_path, registry=registry, auto_init=auto_init)

    elif backend == "sqlserver":
        SqlServerDatabase = _get_sqlserver_database()

        if password is None:
            password = os.environ.get("CRM_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("CRM_SQLSERVER_CONN_STR")

        return SqlServerDatabase(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            trust_server_certificate=trust_server_certificate,
            registry=registry,
            auto_init=auto_init,
        )

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


__all__ = [
    "Column",
    "EntityDefinition",
    "EntityRegistry",
    "Repository",
    "SqlDatabase",
    "SqlRepository",
    "SqliteDatabase",
    "Transaction",
    "TransactionManager",
    "create_database",
    "default_registry",
]
