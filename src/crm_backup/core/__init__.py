"""
Core abstractions for the CRM backup/restore engine.
"""

from .models import ConflictPolicy, Record, WriteAction, WriteResult
from .exceptions import (
    BackupError,
    ConfigError,
    StoreError,
    DuplicateKeyError,
    RepositoryError,
    RecordValidationError,
    SnapshotValidationError,
    SizeError,
    FormatError,
    VersionError,
    IntegrityError,
    RecordError,
    FatalThresholdError,
    AbortError,
)

__all__ = [
    "ConflictPolicy",
    "Record",
    "WriteAction",
    "WriteResult",
    "BackupError",
    "ConfigError",
    "StoreError",
    "DuplicateKeyError",
    "RepositoryError",
    "RecordValidationError",
    "SnapshotValidationError",
    "SizeError",
    "FormatError",
    "VersionError",
    "IntegrityError",
    "RecordError",
    "FatalThresholdError",
    "AbortError",
]
