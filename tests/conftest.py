"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def sqlserver_connection_string() -> str:
    """Connection string for the test SQL Server, from the environment."""
    conn_str = os.environ.get("CRM_SQLSERVER_CONN_STR")
    if conn_str:
        return conn_str

    password = os.environ.get("CRM_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
    host = os.environ.get("CRM_SQLSERVER_HOST", "localhost")
    port = int(os.environ.get("CRM_SQLSERVER_PORT", "1433"))
    database = os.environ.get("CRM_SQLSERVER_DATABASE", os.environ.get("MSSQL_DATABASE", "Crm"))
    username = os.environ.get("CRM_SQLSERVER_USER", "sa")
    driver = os.environ.get("CRM_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")

    return (
        f"Driver={{{driver}}};"
        f"Server={host},{port};"
        f"Database={database};"
        f"UID={username};"
        f"PWD={password};"
        f"TrustServerCertificate=yes"
    )


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    if not (
        os.environ.get("CRM_SQLSERVER_CONN_STR")
        or os.environ.get("CRM_SQLSERVER_PASSWORD")
        or os.environ.get("MSSQL_SA_PASSWORD")
    ):
        return False

    try:
        import pyodbc

        conn = pyodbc.connect(sqlserver_connection_string(), timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def registry():
    """The full CRM entity registry."""
    from crm_backup.store.registry import default_registry
    return default_registry()


@pytest.fixture
def sqlite_db():
    """Fresh in-memory SQLite store with the full CRM schema."""
    from crm_backup.store.sqlite_store import SqliteDatabase

    db = SqliteDatabase(":memory:")
    yield db
    db.close()


@pytest.fixture
def seed() -> Callable:
    """
    Insert records straight into a store, in one committed transaction.

    Usage: seed(db, "users", [{"username": "alice", "password": "x"}])
    """
    from crm_backup.core.models import Record

    def _seed(db, entity_type: str, rows: List[Dict[str, Any]]) -> List[Any]:
        repository = db.repository(entity_type)
        tx = db.begin()
        ids = [repository.insert(tx, Record(entity_type, row)).primary_key for row in rows]
        tx.commit()
        return ids

    return _seed


@pytest.fixture
def make_user() -> Callable[..., Dict[str, Any]]:
    """Factory for user field maps."""
    def _make(n: int, **overrides) -> Dict[str, Any]:
        user = {
            "username": f"user{n}",
            "password": f"$2b$10$hash{n}",
            "email": f"user{n}@example.com",
            "name": f"User {n}",
            "role": "agent",
        }
        user.update(overrides)
        return user
    return _make


@pytest.fixture
def make_property() -> Callable[..., Dict[str, Any]]:
    """Factory for property field maps."""
    def _make(n: int, **overrides) -> Dict[str, Any]:
        prop = {
            "title": f"Apartment {n}",
            "description": "Bright flat close to the lake",
            "type": "sale",
            "price": 250000.0 + n,
            "location": "Seestrasse",
            "city": "Konstanz",
            "rooms": 3,
            "hasBalcony": True,
            "slug": f"apartment-{n}",
        }
        prop.update(overrides)
        return prop
    return _make


@pytest.fixture
def quiet_package_logger():
    """Remove handlers configure_logging() added to the package logger."""
    yield
    package_logger = logging.getLogger("crm_backup")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
