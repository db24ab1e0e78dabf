"""
Restore orchestrator.

Runs one restore through the state machine

    IDLE -> VALIDATING -> IMPORTING -> COMMITTING -> DONE
                                   \\-> ABORTING -> ROLLED_BACK

Validation happens before any transaction is opened. The import then runs
inside exactly one transaction: entity types in foreign-key order, records in
snapshot order, every failed record recorded and skipped. Once all types are
processed the error count is compared with the fatal threshold and the
transaction is either committed or rolled back in full.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from ..core.exceptions import ConfigError, FatalThresholdError, RecordError
from ..core.logging import CorrelationContext, log_with_context
from ..snapshot.models import Snapshot
from ..store.base import Repository, Transaction, TransactionManager
from ..store.registry import EntityRegistry
from .conflicts import ConflictResolver
from .report import RestoreReport
from .validation import SnapshotValidator

logger = logging.getLogger(__name__)

DEFAULT_FATAL_ERROR_THRESHOLD = 50


class RestoreState(str, Enum):
    """States of a single restore run."""
    IDLE = "idle"
    VALIDATING = "validating"
    IMPORTING = "importing"
    COMMITTING = "committing"
    DONE = "done"
    ABORTING = "aborting"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS = {
    RestoreState.IDLE: {RestoreState.VALIDATING},
    RestoreState.VALIDATING: {RestoreState.IMPORTING},
    RestoreState.IMPORTING: {RestoreState.COMMITTING, RestoreState.ABORTING},
    RestoreState.COMMITTING: {RestoreState.DONE, RestoreState.ABORTING},
    RestoreState.ABORTING: {RestoreState.ROLLED_BACK},
    RestoreState.DONE: set(),
    RestoreState.ROLLED_BACK: set(),
}


@dataclass
class RestoreRun:
    """
    Everything one restore accumulates, passed explicitly down the call chain.

    Attributes:
        run_id: Identifier used in log correlation
        state: Current state machine state
        snapshot: The validated snapshot (set once validation passes)
        imported: Entity type to imported (inserted or updated) count
        skipped: Entity type to skipped count
        errors: Accumulated record errors
        warnings: Accumulated warnings
        credential_resets: Records whose credential had to be generated
        abort_reason: Why the run was rolled back, if it was
    """
    run_id: str = field(default_factory=lambda: f"restore-{uuid.uuid4().hex[:12]}")
    state: RestoreState = RestoreState.IDLE
    snapshot: Optional[Snapshot] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    imported: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    errors: List[RecordError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    credential_resets: List[str] = field(default_factory=list)
    abort_reason: Optional[str] = None

    def transition(self, new_state: RestoreState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid restore transition {self.state.value} -> {new_state.value}")
        log_with_context(
            logger, logging.DEBUG,
            f"Restore state {self.state.value} -> {new_state.value}",
            state=new_state.value,
        )
        self.state = new_state

    def to_report(self) -> RestoreReport:
        """Freeze the run into its report."""
        rolled_back = self.state == RestoreState.ROLLED_BACK
        if rolled_back:
            summary = {t: 0 for t in self.imported}
        else:
            summary = dict(self.imported)
        return RestoreReport(
            success=not rolled_back,
            rolled_back=rolled_back,
            total_imported=sum(summary.values()),
            summary=summary,
            errors=[str(e) for e in self.errors],
            warnings=list(self.warnings),
            backup_info=self.snapshot.manifest.backup_info if self.snapshot else {},
            skipped=dict(self.skipped),
            credential_resets=list(self.credential_resets),
            abort_reason=self.abort_reason,
            started_at=self.started_at,
            completed_at=datetime.now(timezone.utc),
        )


class RestoreOrchestrator:
    """
    Restores snapshots into the store with all-or-nothing semantics.

    Concurrent restores against the same store must be serialized by the
    caller; nothing here locks.

    Example:
        >>> orchestrator = RestoreOrchestrator(db.repositories(), db, registry)
        >>> report = orchestrator.restore_file("backup.json")
    """

    def __init__(
        self,
        repositories: Mapping[str, Repository],
        transaction_manager: TransactionManager,
        registry: EntityRegistry,
        validator: Optional[SnapshotValidator] = None,
        resolver: Optional[ConflictResolver] = None,
        fatal_error_threshold: int = DEFAULT_FATAL_ERROR_THRESHOLD,
    ):
        """
        Initialize the orchestrator.

        Args:
            repositories: Repository per entity type
            transaction_manager: Opens the restore transaction
            registry: Entity registry (import order, policies)
            validator: Snapshot validator (defaults to built-in limits)
            resolver: Conflict resolver (defaults to one over registry)
            fatal_error_threshold: Record errors tolerated before rollback
        """
        if fatal_error_threshold < 0:
            raise ConfigError(f"fatal_error_threshold must be >= 0, got {fatal_error_threshold}")
        self.repositories = repositories
        self.transaction_manager = transaction_manager
        self.registry = registry
        self.validator = validator or SnapshotValidator()
        self.resolver = resolver or ConflictResolver(registry)
        self.fatal_error_threshold = fatal_error_threshold

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def restore_file(self, path: Union[str, Path]) -> RestoreReport:
        """Validate and restore a snapshot file."""
        return self._restore(lambda: self.validator.validate_file(path))

    def restore_bytes(self, payload: bytes) -> RestoreReport:
        """Validate and restore an uploaded payload."""
        return self._restore(lambda: self.validator.validate_bytes(payload))

    def restore_snapshot(self, snapshot: Snapshot) -> RestoreReport:
        """Validate and restore an in-memory snapshot."""
        return self._restore(lambda: self.validator.validate_document(snapshot.to_dict()))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _restore(self, validate) -> RestoreReport:
        run = RestoreRun()
        with CorrelationContext(operation="restore", run_id=run.run_id):
            run.transition(RestoreState.VALIDATING)
            try:
                run.snapshot = validate()
            except Exception as e:
                log_with_context(logger, logging.WARNING, f"Restore rejected: {e}")
                raise

            order = self._plan(run)
            run.transition(RestoreState.IMPORTING)
            self._import(run, order)

            report = run.to_report()
            log_with_context(
                logger,
                logging.INFO if report.success else logging.ERROR,
                f"Restore {run.state.value}: imported {report.total_imported}, "
                f"{len(report.errors)} errors, {len(report.warnings)} warnings",
            )
            return report

    def _plan(self, run: RestoreRun) -> List[str]:
        """Import order for this snapshot, plus warnings for what will be ignored."""
        snapshot = run.snapshot

        if not snapshot.manifest.security.sensitive_data_filtered:
            run.warnings.append(
                "Backup manifest does not declare sensitive data as filtered; "
                "restored records may contain unredacted fields"
            )

        for entity_type in snapshot.entity_types:
            if entity_type not in self.registry:
                count = len(snapshot.data[entity_type])
                run.warnings.append(f"Unknown entity type '{entity_type}' ignored ({count} records)")

        order = [t for t in self.registry.import_order() if t in snapshot.data]
        missing = [t for t in order if t not in self.repositories]
        if missing:
            raise ConfigError(f"No repository configured for: {', '.join(missing)}")
        return order

    def _import(self, run: RestoreRun, order: List[str]) -> None:
        tx = self.transaction_manager.begin()
        try:
            for entity_type in order:
                self._import_entity_type(run, tx, entity_type)

            if len(run.errors) > self.fatal_error_threshold:
                raise FatalThresholdError(len(run.errors), self.fatal_error_threshold)

            run.transition(RestoreState.COMMITTING)
            tx.commit()
            run.transition(RestoreState.DONE)

        except FatalThresholdError as e:
            run.abort_reason = str(e)
            run.transition(RestoreState.ABORTING)
            tx.rollback()
            run.transition(RestoreState.ROLLED_BACK)
            log_with_context(logger, logging.ERROR, str(e))

        except BaseException:
            if tx.is_active:
                tx.rollback()
                log_with_context(logger, logging.ERROR, "Restore failed unexpectedly; transaction rolled back")
            raise

    def _import_entity_type(self, run: RestoreRun, tx: Transaction, entity_type: str) -> None:
        repository = self.repositories[entity_type]
        records = run.snapshot.records(entity_type)
        run.imported[entity_type] = 0
        run.skipped[entity_type] = 0

        with CorrelationContext(entity_type=entity_type):
            for index, record in enumerate(records):
                try:
                    resolution = self.resolver.apply(tx, repository, record)
                except Exception as e:
                    error = RecordError(entity_type, index, str(e))
                    run.errors.append(error)
                    log_with_context(logger, logging.WARNING, f"Record failed: {error}")
                    continue

                result = resolution.result
                if result.imported:
                    run.imported[entity_type] += 1
                else:
                    run.skipped[entity_type] += 1
                if resolution.warning:
                    run.warnings.append(resolution.warning)
                for name in result.generated_fields:
                    run.credential_resets.append(
                        f"{entity_type} {result.key}: temporary {name} generated, reset required"
                    )

            log_with_context(
                logger,
                logging.INFO,
                f"Imported {run.imported[entity_type]}/{len(records)} {entity_type} "
                f"({run.skipped[entity_type]} skipped)",
            )
