"""
Core data models shared by the snapshot and restore sides.

A Record is the portable unit of application state: an entity-type tag plus
a map of field values of arbitrary shape. Nothing here knows about specific
entity types; per-type behavior comes from the entity registry.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ConflictPolicy(str, Enum):
    """How a restore handles a natural-key collision with existing data."""
    SKIP_IF_EXISTS = "skip_if_exists"
    UPSERT_ON_CONFLICT = "upsert_on_conflict"
    APPEND_ALWAYS = "append_always"


class WriteAction(str, Enum):
    """What a repository write actually did."""
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class Record:
    """
    A self-describing record tagged with its entity type.

    Attributes:
        entity_type: Registry name of the entity type (e.g. 'users')
        values: Field name to value; values may be scalars, nested maps,
            or arrays of either
    """
    entity_type: str
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the field values."""
        return copy.deepcopy(self.values)

    @classmethod
    def from_dict(cls, entity_type: str, data: Dict[str, Any]) -> "Record":
        return cls(entity_type=entity_type, values=copy.deepcopy(data))


@dataclass
class WriteResult:
    """
    Outcome of writing one record to a repository.

    Attributes:
        action: inserted, updated or skipped
        entity_type: Entity type written
        key: Human-readable natural key of the record
        primary_key: Primary key of the row written or left in place
        generated_fields: Required fields the repository had to fill in
            because the incoming record lacked them
    """
    action: WriteAction
    entity_type: str
    key: str
    primary_key: Optional[Any] = None
    generated_fields: List[str] = field(default_factory=list)

    @property
    def imported(self) -> bool:
        return self.action in (WriteAction.INSERTED, WriteAction.UPDATED)
