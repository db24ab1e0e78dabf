"""
Pre-transaction snapshot validation.

Checks run in this order, and all of them before any transaction is opened:
1. size ceiling (before parsing)
2. decryption and JSON parsing
3. document structure
4. manifest version against the allow-list
5. declared record counts, and the data checksum when present
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from ..core.exceptions import FormatError, IntegrityError, SizeError, VersionError
from ..snapshot.canonical import verify_data_checksum
from ..snapshot.codec import decode_document
from ..snapshot.models import SUPPORTED_VERSIONS, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024


class SnapshotValidator:
    """
    Turns an uploaded payload into a trusted Snapshot or rejects it.
    """

    def __init__(
        self,
        supported_versions: Iterable[str] = SUPPORTED_VERSIONS,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        encryption_key: Optional[Union[str, bytes]] = None,
        verify_checksum: bool = True,
    ):
        """
        Initialize the validator.

        Args:
            supported_versions: Manifest versions accepted
            max_bytes: Payload size ceiling in bytes
            encryption_key: Key for encrypted snapshots
            verify_checksum: Check the manifest checksum when one is present
        """
        self.supported_versions = tuple(supported_versions)
        self.max_bytes = max_bytes
        self.encryption_key = encryption_key
        self.verify_checksum = verify_checksum

    def check_size(self, size_bytes: int) -> None:
        if size_bytes > self.max_bytes:
            raise SizeError(size_bytes, self.max_bytes)

    def validate_file(self, path: Union[str, Path]) -> Snapshot:
        """Validate a snapshot file; its size is checked before it is read."""
        path = Path(path)
        if not path.is_file():
            raise FormatError(f"Snapshot file not found: {path}")
        self.check_size(path.stat().st_size)
        with open(path, "rb") as f:
            payload = f.read()
        return self.validate_bytes(payload)

    def validate_bytes(self, payload: bytes) -> Snapshot:
        """
        Validate serialized snapshot bytes.

        Raises:
            SizeError, FormatError, VersionError, IntegrityError
        """
        self.check_size(len(payload))
        document = decode_document(payload, encryption_key=self.encryption_key)
        return self.validate_document(document)

    def validate_document(self, document: Any) -> Snapshot:
        """
        Validate an already-parsed snapshot document.

        Raises:
            FormatError, VersionError, IntegrityError
        """
        manifest, data = self._check_structure(document)
        self._check_version(manifest)
        self._check_counts(manifest, data)
        self._check_checksum(manifest, data)
        logger.debug(f"Snapshot v{manifest['version']} passed validation")
        return Snapshot.from_dict(document)

    def _check_structure(self, document: Any):
        if not isinstance(document, dict):
            raise FormatError("Invalid backup file format: expected a JSON object")
        manifest = document.get("manifest")
        data = document.get("data")
        if not isinstance(manifest, dict):
            raise FormatError("Invalid backup file format: missing manifest")
        if not isinstance(data, dict):
            raise FormatError("Invalid backup file format: missing data")
        if "version" not in manifest:
            raise FormatError("Invalid backup file format: manifest has no version")

        totals = manifest.get("totalRecords")
        if not isinstance(totals, dict):
            raise FormatError("Invalid backup file format: manifest has no totalRecords")
        for entity_type, count in totals.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise FormatError(f"Invalid record count for {entity_type}: {count!r}")

        for entity_type, records in data.items():
            if not isinstance(records, list):
                raise FormatError(f"Invalid backup file format: data.{entity_type} is not a list")

        security = manifest.get("security")
        if security is not None and not isinstance(security, dict):
            raise FormatError("Invalid backup file format: manifest.security is not an object")

        return manifest, data

    def _check_version(self, manifest: Dict[str, Any]) -> None:
        version = manifest["version"]
        if not isinstance(version, str) or version not in self.supported_versions:
            raise VersionError(version, self.supported_versions)

    def _check_counts(self, manifest: Dict[str, Any], data: Dict[str, Any]) -> None:
        totals = manifest["totalRecords"]
        mismatches = {}
        for entity_type in list(totals) + [t for t in data if t not in totals]:
            declared = totals.get(entity_type)
            actual = len(data.get(entity_type, []))
            if declared != actual:
                mismatches[entity_type] = {"declared": declared, "actual": actual}
        if mismatches:
            details = ", ".join(
                f"{t} (declared {m['declared']}, found {m['actual']})"
                for t, m in mismatches.items()
            )
            raise IntegrityError(f"Record counts do not match data: {details}", mismatches)

    def _check_checksum(self, manifest: Dict[str, Any], data: Dict[str, Any]) -> None:
        checksum = manifest.get("checksum")
        if not self.verify_checksum or checksum is None:
            return
        if not verify_data_checksum(data, checksum):
            raise IntegrityError("Snapshot checksum does not match its data")
