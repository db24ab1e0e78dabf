"""
Restore side of the engine: validation, conflict resolution and the
transactional orchestrator.
"""

from .conflicts import ConflictResolver, Resolution
from .orchestrator import (
    DEFAULT_FATAL_ERROR_THRESHOLD,
    RestoreOrchestrator,
    RestoreRun,
    RestoreState,
)
from .report import RestoreReport
from .validation import DEFAULT_MAX_UPLOAD_BYTES, SnapshotValidator

__all__ = [
    "DEFAULT_FATAL_ERROR_THRESHOLD",
    "DEFAULT_MAX_UPLOAD_BYTES",
    "ConflictResolver",
    "Resolution",
    "RestoreOrchestrator",
    "RestoreReport",
    "RestoreRun",
    "RestoreState",
    "SnapshotValidator",
]
