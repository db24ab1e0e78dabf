"""
Configuration loader for the backup/restore engine.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml
except ImportError:
    yaml = None

from ..core.exceptions import ConfigError
from ..restore.orchestrator import DEFAULT_FATAL_ERROR_THRESHOLD
from ..restore.validation import DEFAULT_MAX_UPLOAD_BYTES
from ..snapshot.models import SUPPORTED_VERSIONS


logger = logging.getLogger(__name__)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class BackupConfig:
    """
    Configuration for the backup/restore engine.

    Built-in defaults, overlaid by an optional YAML file, overlaid by
    environment variables.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = self._default_config()
        if self.config_path:
            self.config = _deep_merge(self.config, self._load_config())
        self._apply_env_overrides()
        self._validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if yaml is None:
            raise ImportError(
                "pyyaml is required for config loading. "
                "Install with: pip install pyyaml"
            )

        if not self.config_path.exists():
            raise ConfigError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(f"Config file must contain a mapping: {self.config_path}")
        return config

    def _default_config(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "store": {
                "backend": "sqlite",
                "sqlite": {
                    "path": "local/crm.db",
                },
                "sqlserver": {
                    "host": "localhost",
                    "port": 1433,
                    "database": "Crm",
                    "user": "sa",
                    "schema": "dbo",
                    "driver": "ODBC Driver 18 for SQL Server",
                    "trust_server_certificate": True,
                },
            },
            "backup": {
                "created_by": "system",
                "output_dir": "local/backups",
                "encryption": {
                    "enabled": False,
                    "key_env_var": "SNAPSHOT_ENCRYPTION_KEY",
                },
            },
            "restore": {
                "fatal_error_threshold": DEFAULT_FATAL_ERROR_THRESHOLD,
                "max_upload_bytes": DEFAULT_MAX_UPLOAD_BYTES,
                "supported_versions": list(SUPPORTED_VERSIONS),
                "verify_checksum": True,
            },
            "logging": {
                "level": "INFO",
                "structured": False,
            },
        }

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        store = self.config.setdefault("store", {})
        sqlserver = store.setdefault("sqlserver", {})
        restore = self.config.setdefault("restore", {})
        backup = self.config.setdefault("backup", {})

        backend = os.environ.get("CRM_DB_BACKEND")
        if backend:
            store["backend"] = backend.lower()

        sqlite_path = os.environ.get("CRM_SQLITE_PATH")
        if sqlite_path:
            store.setdefault("sqlite", {})["path"] = sqlite_path

        conn_str = os.environ.get("CRM_SQLSERVER_CONN_STR")
        if conn_str:
            sqlserver["connection_string"] = conn_str
        for env_var, key in (
            ("CRM_SQLSERVER_HOST", "host"),
            ("CRM_SQLSERVER_PORT", "port"),
            ("CRM_SQLSERVER_DATABASE", "database"),
            ("CRM_SQLSERVER_USER", "user"),
            ("CRM_SQLSERVER_SCHEMA", "schema"),
        ):
            value = os.environ.get(env_var)
            if value:
                sqlserver[key] = value

        threshold = os.environ.get("CRM_BACKUP_FATAL_THRESHOLD")
        if threshold:
            restore["fatal_error_threshold"] = self._parse_int("CRM_BACKUP_FATAL_THRESHOLD", threshold)

        max_bytes = os.environ.get("CRM_BACKUP_MAX_UPLOAD_BYTES")
        if max_bytes:
            restore["max_upload_bytes"] = self._parse_int("CRM_BACKUP_MAX_UPLOAD_BYTES", max_bytes)

        versions = os.environ.get("CRM_BACKUP_SUPPORTED_VERSIONS")
        if versions:
            restore["supported_versions"] = [v.strip() for v in versions.split(",") if v.strip()]

        created_by = os.environ.get("CRM_BACKUP_CREATED_BY")
        if created_by:
            backup["created_by"] = created_by

    @staticmethod
    def _parse_int(name: str, value: str) -> int:
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None

    def _validate(self) -> None:
        restore = self.get_restore_config()
        threshold = restore.get("fatal_error_threshold")
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise ConfigError(f"restore.fatal_error_threshold must be a non-negative integer, got {threshold!r}")
        max_bytes = restore.get("max_upload_bytes")
        if isinstance(max_bytes, bool) or not isinstance(max_bytes, int) or max_bytes <= 0:
            raise ConfigError(f"restore.max_upload_bytes must be a positive integer, got {max_bytes!r}")
        versions = restore.get("supported_versions")
        if not versions or not isinstance(versions, list):
            raise ConfigError("restore.supported_versions must be a non-empty list")
        restore["supported_versions"] = [str(v) for v in versions]
        backend = self.get_store_config().get("backend")
        if backend not in ("sqlite", "sqlserver"):
            raise ConfigError(f"Unknown store backend: {backend!r}")

    def get_store_config(self) -> Dict[str, Any]:
        """Get store configuration."""
        return self.config.get("store", {})

    def get_backup_config(self) -> Dict[str, Any]:
        """Get backup configuration."""
        return self.config.get("backup", {})

    def get_restore_config(self) -> Dict[str, Any]:
        """Get restore configuration."""
        return self.config.get("restore", {})

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging", {})

    @property
    def fatal_error_threshold(self) -> int:
        return self.get_restore_config()["fatal_error_threshold"]

    @property
    def max_upload_bytes(self) -> int:
        return self.get_restore_config()["max_upload_bytes"]

    @property
    def supported_versions(self) -> List[str]:
        return list(self.get_restore_config()["supported_versions"])

    @property
    def created_by(self) -> str:
        return self.get_backup_config().get("created_by", "system")

    def encryption_key(self) -> Optional[bytes]:
        """Snapshot encryption key from the configured environment variable."""
        encryption = self.get_backup_config().get("encryption", {})
        env_var = encryption.get("key_env_var", "SNAPSHOT_ENCRYPTION_KEY")
        value = os.environ.get(env_var)
        return value.encode("utf-8") if value else None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
