"""
Repository and transaction interfaces consumed by the backup/restore engine.

The builder only reads (fetch_all). The orchestrator writes through
find_existing / insert / update inside a single caller-supplied transaction
so the conflict resolver can sit between the lookup and the write.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.models import Record, WriteResult


class Transaction(ABC):
    """
    One flat transaction. No nesting or savepoints.
    """

    @abstractmethod
    def commit(self) -> None:
        """Make every write performed in this transaction durable."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard every write performed in this transaction."""
        pass

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """True until commit() or rollback() has been called."""
        pass


class TransactionManager(ABC):
    """Opens transactions against the underlying store."""

    @abstractmethod
    def begin(self) -> Transaction:
        """
        Open a new transaction.

        Returns:
            The open transaction

        Raises:
            StoreError: If the store cannot start a transaction
        """
        pass


class Repository(ABC):
    """
    Typed access to the records of one entity type.
    """

    @property
    @abstractmethod
    def entity_type(self) -> str:
        pass

    @abstractmethod
    def fetch_all(self) -> List[Record]:
        """
        Fetch every current record of this entity type, ordered by primary key.

        Raises:
            RepositoryError: If the records cannot be read
        """
        pass

    @abstractmethod
    def find_existing(self, tx: Transaction, record: Record) -> Optional[Dict[str, Any]]:
        """
        Look up the stored record sharing the incoming record's natural key.

        When part of the natural key is null, an explicit primary key is
        matched instead.

        Args:
            tx: Open transaction
            record: Incoming record

        Returns:
            Stored field values, or None if no record shares the key
        """
        pass

    @abstractmethod
    def insert(self, tx: Transaction, record: Record) -> WriteResult:
        """
        Insert a new record.

        Raises:
            RecordValidationError: If the record does not satisfy the entity definition
            DuplicateKeyError: If the row collides with a unique column of a stored row
            StoreError: If the store rejects the row
        """
        pass

    @abstractmethod
    def update(self, tx: Transaction, existing: Dict[str, Any], record: Record) -> WriteResult:
        """
        Overwrite the mutable fields of an existing record.

        The existing record's immutable fields (primary key, createdAt) are kept.
        """
        pass

    def insert_or_update(self, tx: Transaction, record: Record) -> WriteResult:
        """
        Insert the record, or update the record already holding its natural key.
        """
        existing = self.find_existing(tx, record)
        if existing is None:
            return self.insert(tx, record)
        return self.update(tx, existing, record)

    def count(self) -> int:
        """Number of stored records."""
        return len(self.fetch_all())
