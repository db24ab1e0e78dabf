"""
Custom exceptions for the backup/restore engine.
"""

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base exception for all backup/restore errors."""
    pass


class ConfigError(BackupError):
    """
    Error in backup configuration.

    Raised when:
    - Configuration file is missing or invalid
    - A configured value is out of its valid range
    """
    pass


class StoreError(BackupError):
    """
    Error talking to the underlying relational store.

    Raised when:
    - A connection cannot be opened
    - Commit or rollback fails
    - The store schema cannot be created
    """
    pass


class DuplicateKeyError(StoreError):
    """
    An insert collided with a unique column of a stored row.

    Raised for collisions the natural-key lookup cannot see, e.g. a
    property whose slug is already taken under a different id. The
    conflict resolver treats it like a natural-key collision.
    """

    def __init__(self, entity_type: str, message: str):
        super().__init__(message)
        self.entity_type = entity_type


class RepositoryError(BackupError):
    """
    A repository fetch failed while building a snapshot.

    The build is aborted; no snapshot is produced.
    """

    def __init__(self, entity_type: str, message: str):
        super().__init__(f"Failed to fetch {entity_type}: {message}")
        self.entity_type = entity_type


class RecordValidationError(BackupError):
    """
    A single record does not satisfy its entity definition.

    Raised by repositories before any SQL is issued, e.g. when a
    required field is missing or the record is not a mapping.
    """

    def __init__(self, entity_type: str, message: str):
        super().__init__(message)
        self.entity_type = entity_type


# ---------------------------------------------------------------------------
# Snapshot validation (pre-transaction, zero side effects)
# ---------------------------------------------------------------------------

class SnapshotValidationError(BackupError):
    """Base class for rejections raised before a restore opens a transaction."""
    pass


class SizeError(SnapshotValidationError):
    """Uploaded payload exceeds the configured byte ceiling."""

    def __init__(self, size_bytes: int, max_bytes: int):
        super().__init__(
            f"Snapshot is {size_bytes:,} bytes; maximum allowed is {max_bytes:,} bytes"
        )
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class FormatError(SnapshotValidationError):
    """Payload is not a structurally valid snapshot document."""
    pass


class VersionError(SnapshotValidationError):
    """Manifest version is not on the supported allow-list."""

    def __init__(self, version: Any, supported: Any):
        supported_list = ", ".join(supported)
        super().__init__(
            f"Backup version {version!r} is not supported. "
            f"Supported versions: {supported_list}"
        )
        self.version = version
        self.supported = list(supported)


class IntegrityError(SnapshotValidationError):
    """
    Manifest and data disagree.

    Raised when a declared record count does not match the data section,
    or when the manifest checksum does not match the data.
    """

    def __init__(self, message: str, mismatches: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.mismatches = mismatches or {}


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

class RecordError(BackupError):
    """
    A single record failed to import.

    Non-fatal: accumulated by the orchestrator and surfaced only in the
    restore report.
    """

    def __init__(self, entity_type: str, index: int, message: str):
        super().__init__(message)
        self.entity_type = entity_type
        self.index = index
        self.message = message

    def __str__(self) -> str:
        return f"{self.entity_type}[{self.index}]: {self.message}"


class FatalThresholdError(BackupError):
    """
    Too many record errors accumulated during a restore.

    Converts the restore into a full rollback.
    """

    def __init__(self, error_count: int, threshold: int):
        super().__init__(
            f"Too many errors during import ({error_count} > {threshold}). Aborting restore."
        )
        self.error_count = error_count
        self.threshold = threshold


# The restore state machine calls this transition "abort".
AbortError = FatalThresholdError
