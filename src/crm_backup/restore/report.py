"""
Restore report: the sole output of one restore invocation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class RestoreReport:
    """
    Report of a restore.

    A rolled-back restore reports total_imported == 0 and zero counts, but
    keeps the errors and warnings that led to the abort.
    """
    success: bool
    rolled_back: bool
    total_imported: int
    summary: Dict[str, int]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    backup_info: Dict[str, Any] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    credential_resets: List[str] = field(default_factory=list)
    abort_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (camelCase, as returned to API clients)."""
        result = {
            "success": self.success,
            "rolledBack": self.rolled_back,
            "totalImported": self.total_imported,
            "summary": dict(self.summary),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "backupInfo": dict(self.backup_info),
            "skipped": dict(self.skipped),
            "credentialResets": list(self.credential_resets),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.abort_reason:
            result["abortReason"] = self.abort_reason
        return result

    def format_summary(self) -> str:
        """Get a human-readable summary."""
        status = "ROLLED BACK" if self.rolled_back else "COMMITTED"
        lines = [
            f"Restore Report ({status})",
            f"  Backup: v{self.backup_info.get('version')} "
            f"created {self.backup_info.get('createdAt')} by {self.backup_info.get('createdBy')}",
        ]
        if self.started_at and self.completed_at:
            lines.append(f"  Duration: {(self.completed_at - self.started_at).total_seconds():.1f}s")
        if self.abort_reason:
            lines.append(f"  Aborted: {self.abort_reason}")
        lines.append("")
        lines.append(f"  Imported: {self.total_imported}")
        for entity_type, count in self.summary.items():
            skipped = self.skipped.get(entity_type, 0)
            suffix = f" (skipped {skipped})" if skipped else ""
            lines.append(f"    {entity_type}: {count}{suffix}")
        lines.append("")
        lines.append(f"  Errors: {len(self.errors)}")
        lines.append(f"  Warnings: {len(self.warnings)}")
        lines.append(f"  Credential resets: {len(self.credential_resets)}")
        return "\n".join(lines)
