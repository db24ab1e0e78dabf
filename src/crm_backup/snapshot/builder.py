"""
Snapshot builder.

Reads every registered entity type through its repository, redacts each
record and assembles a versioned manifest plus data payload. The build is
all-or-nothing: a failed fetch aborts it and nothing is returned.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from ..core.exceptions import RepositoryError
from ..core.logging import CorrelationContext, log_with_context
from ..store.base import Repository
from ..store.registry import EntityRegistry
from .canonical import compute_data_checksum
from .models import CURRENT_VERSION, SNAPSHOT_FORMAT, Manifest, SecurityInfo, Snapshot
from .redaction import Redactor

logger = logging.getLogger(__name__)


class SnapshotBuilder:
    """
    Builds redacted point-in-time snapshots of the store.

    Example:
        >>> builder = SnapshotBuilder(db.repositories(), registry, created_by="admin")
        >>> snapshot = builder.build()
    """

    def __init__(
        self,
        repositories: Mapping[str, Repository],
        registry: EntityRegistry,
        redactor: Optional[Redactor] = None,
        created_by: str = "system",
        version: str = CURRENT_VERSION,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the builder.

        Args:
            repositories: Repository per entity type
            registry: Entity types to snapshot, in snapshot order
            redactor: Redactor to apply (defaults to one built from registry)
            created_by: Provenance recorded in the manifest
            version: Manifest version to stamp
            clock: Returns the build time (defaults to UTC now)
        """
        self.repositories = repositories
        self.registry = registry
        self.redactor = redactor or Redactor(registry=registry)
        self.created_by = created_by
        self.version = version
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build(self) -> Snapshot:
        """
        Build a snapshot of every registered entity type.

        Returns:
            The complete Snapshot

        Raises:
            RepositoryError: If any entity type cannot be fetched
        """
        build_id = f"backup-{uuid.uuid4().hex[:12]}"
        with CorrelationContext(operation="backup", run_id=build_id):
            created_at = self._clock().isoformat()
            data: Dict[str, List[dict]] = {}
            heuristic: Dict[str, List[str]] = {}

            for entity_type in self.registry.names:
                records = self._fetch(entity_type)
                redacted = []
                removed = set()
                for record in records:
                    clean, audit = self.redactor.redact_with_audit(record)
                    redacted.append(clean.values)
                    removed.update(audit.heuristic)
                data[entity_type] = redacted
                if removed:
                    heuristic[entity_type] = sorted(removed)
                    log_with_context(
                        logger,
                        logging.WARNING,
                        f"Heuristic-only redaction in {entity_type}: {', '.join(sorted(removed))}",
                        entity_type=entity_type,
                    )

            manifest = Manifest(
                version=self.version,
                created_at=created_at,
                created_by=self.created_by,
                total_records={t: len(rows) for t, rows in data.items()},
                security=SecurityInfo(
                    sensitive_data_filtered=True,
                    entities_filtered=list(self.registry.names),
                    heuristic_redactions=heuristic,
                ),
                format=SNAPSHOT_FORMAT,
                checksum=compute_data_checksum(data),
            )

            total = sum(manifest.total_records.values())
            log_with_context(
                logger,
                logging.INFO,
                f"Built snapshot v{self.version}: {total} records across {len(data)} entity types",
            )
            return Snapshot(manifest=manifest, data=data)

    def _fetch(self, entity_type: str):
        repository = self.repositories.get(entity_type)
        if repository is None:
            raise RepositoryError(entity_type, "no repository registered")
        try:
            return repository.fetch_all()
        except RepositoryError:
            logger.error(f"Snapshot aborted: fetch of {entity_type} failed")
            raise
        except Exception as e:
            logger.error(f"Snapshot aborted: fetch of {entity_type} failed: {e}")
            raise RepositoryError(entity_type, str(e)) from e
