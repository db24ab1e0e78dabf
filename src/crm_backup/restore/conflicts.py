"""
Conflict resolution for restores.

Each entity type carries one ConflictPolicy, fixed in the registry:
- SKIP_IF_EXISTS: keep the stored record, emit one warning; an insert that
  collides on any other unique column is skipped the same way
- UPSERT_ON_CONFLICT: merge the incoming mutable fields into the stored record
- APPEND_ALWAYS: no lookup at all; the incoming id is dropped so the store
  assigns a new one
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.exceptions import DuplicateKeyError
from ..core.models import ConflictPolicy, Record, WriteAction, WriteResult
from ..store.base import Repository, Transaction
from ..store.registry import EntityRegistry

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of writing one incoming record."""
    result: WriteResult
    warning: Optional[str] = None


class ConflictResolver:
    """
    Applies each entity type's conflict policy between lookup and write.
    """

    def __init__(self, registry: EntityRegistry):
        self.registry = registry

    def policy_for(self, entity_type: str) -> ConflictPolicy:
        return self.registry.get(entity_type).conflict_policy

    def apply(self, tx: Transaction, repository: Repository, record: Record) -> Resolution:
        """
        Write an incoming record, resolving any natural-key collision.

        Args:
            tx: Open restore transaction
            repository: Repository of the record's entity type
            record: Incoming record

        Returns:
            Resolution with the write result and an optional warning

        Raises:
            Whatever the repository raises for a failed write
        """
        definition = self.registry.get(record.entity_type)

        if definition.conflict_policy == ConflictPolicy.APPEND_ALWAYS:
            pk = definition.primary_key.name
            values = {k: v for k, v in record.values.items() if k != pk}
            return Resolution(repository.insert(tx, Record(record.entity_type, values)))

        existing = repository.find_existing(tx, record)
        if existing is not None:
            return self.resolve(tx, repository, record, existing)

        try:
            return Resolution(repository.insert(tx, record))
        except DuplicateKeyError as e:
            # Collision on a unique column outside the natural key.
            if definition.conflict_policy != ConflictPolicy.SKIP_IF_EXISTS:
                raise
            logger.debug(f"{record.entity_type} insert collided: {e}")
            return self.skip(record)

    def resolve(
        self,
        tx: Transaction,
        repository: Repository,
        record: Record,
        existing: Dict[str, Any],
    ) -> Resolution:
        """
        Handle an incoming record whose natural key is already stored.
        """
        definition = self.registry.get(record.entity_type)
        policy = definition.conflict_policy
        key = definition.key_label(record.values)

        if policy == ConflictPolicy.UPSERT_ON_CONFLICT:
            logger.debug(f"Upserting {record.entity_type} {key}")
            return Resolution(repository.update(tx, existing, record))

        if policy == ConflictPolicy.SKIP_IF_EXISTS:
            return self.skip(record, existing.get(definition.primary_key.name))

        raise ValueError(f"{policy} does not resolve collisions for {record.entity_type}")

    def skip(self, record: Record, primary_key: Any = None) -> Resolution:
        """Keep the stored record and warn once."""
        key = self.registry.get(record.entity_type).key_label(record.values)
        warning = f"{record.entity_type} record {key} already exists - skipped"
        logger.info(warning)
        return Resolution(
            WriteResult(
                action=WriteAction.SKIPPED,
                entity_type=record.entity_type,
                key=key,
                primary_key=primary_key,
            ),
            warning=warning,
        )
