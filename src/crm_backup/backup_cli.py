#!/usr/bin/env python3
"""
CLI for CRM backup and restore.

Usage:
    crm-backup init-db
    crm-backup backup   --out local/backups/crm-backup.json [--encrypt]
    crm-backup restore  local/backups/crm-backup.json [--json]
    crm-backup validate local/backups/crm-backup.json
    crm-backup inspect  local/backups/crm-backup.json

Exit codes: 0 success, 1 rejected or rolled back, 2 configuration error.

Settings come from --config (YAML), a local .env file and the environment;
see BackupConfig for the variables read.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import BackupConfig
from .core.exceptions import BackupError, ConfigError, SnapshotValidationError, StoreError
from .core.logging import configure_logging, get_logger
from .restore import RestoreOrchestrator, SnapshotValidator
from .snapshot import SnapshotBuilder, write_snapshot
from .store import create_database, default_registry

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def open_database(config: BackupConfig, auto_init: bool = False):
    """Open the configured store."""
    store = config.get_store_config()
    backend = store.get("backend", "sqlite")
    if backend == "sqlite":
        return create_database(
            backend="sqlite",
            db_path=store.get("sqlite", {}).get("path"),
            auto_init=auto_init,
        )

    sqlserver = store.get("sqlserver", {})
    return create_database(
        backend="sqlserver",
        connection_string=sqlserver.get("connection_string"),
        host=sqlserver.get("host", "localhost"),
        port=int(sqlserver.get("port", 1433)),
        database=sqlserver.get("database", "Crm"),
        username=sqlserver.get("user", "sa"),
        driver=sqlserver.get("driver", "ODBC Driver 18 for SQL Server"),
        schema=sqlserver.get("schema", "dbo"),
        trust_server_certificate=bool(sqlserver.get("trust_server_certificate", True)),
        auto_init=auto_init,
    )


def build_validator(config: BackupConfig) -> SnapshotValidator:
    return SnapshotValidator(
        supported_versions=config.supported_versions,
        max_bytes=config.max_upload_bytes,
        encryption_key=config.encryption_key(),
        verify_checksum=bool(config.get("restore.verify_checksum", True)),
    )


def cmd_init_db(args, config: BackupConfig) -> int:
    """Create any missing CRM tables."""
    db = open_database(config, auto_init=True)
    db.close()
    print("Schema ready")
    return EXIT_OK


def cmd_backup(args, config: BackupConfig) -> int:
    """Write a redacted snapshot of the whole store."""
    key = None
    if args.encrypt or config.get("backup.encryption.enabled", False):
        key = config.encryption_key()
        if not key:
            env_var = config.get("backup.encryption.key_env_var", "SNAPSHOT_ENCRYPTION_KEY")
            logger.error(f"Encryption requested but {env_var} is not set")
            return EXIT_CONFIG

    out = args.out
    if not out:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        out = Path(config.get("backup.output_dir", "local/backups")) / f"crm-backup-{stamp}.json"

    registry = default_registry()
    with open_database(config) as db:
        builder = SnapshotBuilder(
            db.repositories(),
            registry,
            created_by=args.created_by or config.created_by,
        )
        snapshot = builder.build()

    path = write_snapshot(snapshot, out, encryption_key=key)
    total = sum(snapshot.manifest.total_records.values())
    print(f"Backup written to {path} ({total} records)")
    return EXIT_OK


def cmd_restore(args, config: BackupConfig) -> int:
    """Restore one snapshot file into the store."""
    registry = default_registry()
    with open_database(config) as db:
        orchestrator = RestoreOrchestrator(
            db.repositories(),
            db,
            registry,
            validator=build_validator(config),
            fatal_error_threshold=config.fatal_error_threshold,
        )
        report = orchestrator.restore_file(args.file)

    print(report.format_summary())
    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))

    return EXIT_OK if report.success else EXIT_FAILED


def cmd_validate(args, config: BackupConfig) -> int:
    """Run every pre-restore check without touching the store."""
    snapshot = build_validator(config).validate_file(args.file)
    total = sum(snapshot.manifest.total_records.values())
    print(f"Valid snapshot v{snapshot.manifest.version}: {total} records")
    return EXIT_OK


def cmd_inspect(args, config: BackupConfig) -> int:
    """Print a snapshot's manifest."""
    snapshot = build_validator(config).validate_file(args.file)
    print(json.dumps(snapshot.manifest.to_dict(), indent=2))
    return EXIT_OK


COMMANDS = {
    "init-db": cmd_init_db,
    "backup": cmd_backup,
    "restore": cmd_restore,
    "validate": cmd_validate,
    "inspect": cmd_inspect,
}


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="crm-backup",
        description="CRM backup and restore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--structured-logs", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the CRM schema")

    backup_parser = subparsers.add_parser("backup", help="Write a redacted snapshot")
    backup_parser.add_argument("--out", help="Output file (default: timestamped file in backup.output_dir)")
    backup_parser.add_argument("--encrypt", action="store_true", help="Encrypt with SNAPSHOT_ENCRYPTION_KEY")
    backup_parser.add_argument("--created-by", help="Provenance recorded in the manifest")

    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot")
    restore_parser.add_argument("file", help="Snapshot file")
    restore_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    validate_parser = subparsers.add_parser("validate", help="Validate a snapshot without restoring")
    validate_parser.add_argument("file", help="Snapshot file")

    inspect_parser = subparsers.add_parser("inspect", help="Show a snapshot's manifest")
    inspect_parser.add_argument("file", help="Snapshot file")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command not in COMMANDS:
        print("No command specified. Use --help for usage.", file=sys.stderr)
        return EXIT_CONFIG

    # Shell environment wins over .env
    load_dotenv(override=False)

    try:
        config = BackupConfig(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    level = logging.DEBUG if args.verbose else getattr(
        logging, str(config.get("logging.level", "INFO")).upper(), logging.INFO
    )
    configure_logging(
        level=level,
        structured=args.structured_logs or bool(config.get("logging.structured", False)),
    )

    try:
        return COMMANDS[args.command](args, config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except SnapshotValidationError as e:
        logger.error(f"Snapshot rejected: {e}")
        return EXIT_FAILED
    except StoreError as e:
        logger.error(f"Store error: {e}")
        return EXIT_FAILED
    except BackupError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
