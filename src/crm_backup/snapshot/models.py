"""
Snapshot data models.

A snapshot document has exactly two top-level keys:

    {"manifest": {...}, "data": {"<entityType>": [<record>, ...], ...}}

Manifest keys are camelCase on the wire; the dataclasses use snake_case.
"""

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.models import Record

CURRENT_VERSION = "2.0"
SUPPORTED_VERSIONS = ("1.0", "2.0")
SNAPSHOT_FORMAT = "crm-secure-backup"


@dataclass(frozen=True)
class SecurityInfo:
    """
    Redaction summary carried in the manifest.

    Attributes:
        sensitive_data_filtered: Whether the data section was redacted
        entities_filtered: Entity types the redactor was applied to
        heuristic_redactions: Entity type to field paths removed only by the
            substring rule; empty types are omitted
    """
    sensitive_data_filtered: bool = True
    entities_filtered: List[str] = field(default_factory=list)
    heuristic_redactions: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "sensitiveDataFiltered": self.sensitive_data_filtered,
            "entitiesFiltered": list(self.entities_filtered),
        }
        if self.heuristic_redactions:
            result["heuristicRedactions"] = {
                k: list(v) for k, v in self.heuristic_redactions.items()
            }
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SecurityInfo":
        if not data:
            return cls(sensitive_data_filtered=False)
        return cls(
            sensitive_data_filtered=bool(data.get("sensitiveDataFiltered", False)),
            entities_filtered=list(data.get("entitiesFiltered") or []),
            heuristic_redactions={
                k: list(v) for k, v in (data.get("heuristicRedactions") or {}).items()
            },
        )


@dataclass(frozen=True)
class Manifest:
    """
    Metadata header of a snapshot.

    Invariant: total_records[t] == len(data[t]) for every entity type t.
    """
    version: str
    created_at: str
    created_by: str
    total_records: Dict[str, int]
    security: SecurityInfo = field(default_factory=SecurityInfo)
    format: Optional[str] = None
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "version": self.version,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "totalRecords": dict(self.total_records),
            "security": self.security.to_dict(),
        }
        if self.format is not None:
            result["format"] = self.format
        if self.checksum is not None:
            result["checksum"] = self.checksum
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            version=data["version"],
            created_at=data.get("createdAt"),
            created_by=data.get("createdBy"),
            total_records=dict(data.get("totalRecords") or {}),
            security=SecurityInfo.from_dict(data.get("security")),
            format=data.get("format"),
            checksum=data.get("checksum"),
        )

    @property
    def backup_info(self) -> Dict[str, Any]:
        """Provenance summary copied into restore reports."""
        return {
            "version": self.version,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
        }


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable {manifest, data} pair.

    Built only by SnapshotBuilder or parsed from a validated document. The
    data section is copied on construction and exposed read-only: a
    mapping of entity type to a tuple of records.
    """
    manifest: Manifest
    data: Mapping[str, Sequence[Dict[str, Any]]]

    def __post_init__(self):
        frozen = {t: tuple(copy.deepcopy(list(records))) for t, records in self.data.items()}
        object.__setattr__(self, "data", MappingProxyType(frozen))

    @property
    def entity_types(self) -> List[str]:
        return list(self.data)

    def records(self, entity_type: str) -> List[Record]:
        """Records of one entity type, in snapshot order."""
        return [Record.from_dict(entity_type, values) for values in self.data.get(entity_type, ())]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict(),
            "data": {t: copy.deepcopy(list(records)) for t, records in self.data.items()},
        }

    @classmethod
    def from_dict(cls, document: Dict[str, Any]) -> "Snapshot":
        return cls(
            manifest=Manifest.from_dict(document["manifest"]),
            data=document["data"],
        )
