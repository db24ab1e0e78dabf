"""
Snapshot side of the engine: redaction, manifest models, building and
serialization of backups.
"""

from .builder import SnapshotBuilder
from .canonical import canonicalize, compute_data_checksum, verify_data_checksum
from .codec import decode_document, encode_snapshot, write_snapshot
from .models import (
    CURRENT_VERSION,
    SNAPSHOT_FORMAT,
    SUPPORTED_VERSIONS,
    Manifest,
    SecurityInfo,
    Snapshot,
)
from .redaction import (
    UNIVERSAL_SENSITIVE_FIELDS,
    UNIVERSAL_SENSITIVE_PATTERNS,
    RedactionAudit,
    RedactionPolicy,
    Redactor,
    redact_record,
)

__all__ = [
    "CURRENT_VERSION",
    "SNAPSHOT_FORMAT",
    "SUPPORTED_VERSIONS",
    "UNIVERSAL_SENSITIVE_FIELDS",
    "UNIVERSAL_SENSITIVE_PATTERNS",
    "Manifest",
    "RedactionAudit",
    "RedactionPolicy",
    "Redactor",
    "SecurityInfo",
    "Snapshot",
    "SnapshotBuilder",
    "canonicalize",
    "compute_data_checksum",
    "decode_document",
    "encode_snapshot",
    "redact_record",
    "verify_data_checksum",
    "write_snapshot",
]
