"""
Entity registry for the CRM store.

The registry is the single lookup table for everything the engine needs to
know per entity type: table and column mapping, natural key, foreign-key
parents, extra sensitive fields and conflict policy. The redactor, builder,
repositories and orchestrator all stay generic and consult it.

Registry order is the order in which snapshots list entity types. Restore
order is derived from the foreign-key graph (see EntityRegistry.import_order).
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.models import ConflictPolicy

logger = logging.getLogger(__name__)

COLUMN_TYPES = {"integer", "text", "real", "boolean", "timestamp", "json"}


def _to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_temporary_password() -> str:
    """Random placeholder for a credential that was redacted from a snapshot."""
    return f"temp-{secrets.token_hex(16)}"


@dataclass(frozen=True)
class Column:
    """
    One persisted field of an entity type.

    Attributes:
        name: Field name as it appears in records (camelCase)
        type: One of COLUMN_TYPES
        column: SQL column name (defaults to snake_case of name)
        required: Insert fails if the value is missing and there is no default
        primary_key: Surrogate identifier assigned by the store
        unique: Column carries a unique constraint
        references: Entity type this column points at (foreign key)
        default: Value, or zero-argument callable, used when the field is missing
        credential: The default stands in for a secret; callers are told
    """
    name: str
    type: str = "text"
    column: str = ""
    required: bool = False
    primary_key: bool = False
    unique: bool = False
    references: Optional[str] = None
    default: Any = None
    credential: bool = False

    def __post_init__(self):
        if self.type not in COLUMN_TYPES:
            raise ValueError(f"Unknown column type {self.type!r} for {self.name}")
        if not self.column:
            object.__setattr__(self, "column", _to_snake(self.name))

    def default_value(self) -> Any:
        if callable(self.default):
            return self.default()
        return self.default


def _id() -> Column:
    return Column("id", "integer", primary_key=True)


def _created_at() -> Column:
    return Column("createdAt", "timestamp", required=True, default=utc_now_iso)


def _updated_at() -> Column:
    return Column("updatedAt", "timestamp", required=True, default=utc_now_iso)


@dataclass(frozen=True)
class EntityDefinition:
    """
    Everything the engine knows about one entity type.

    Attributes:
        name: Registry name, also the key used in snapshot documents
        table: SQL table name
        columns: Persisted columns
        natural_key: Field(s) that identify a record independent of its id
        conflict_policy: Restore behavior on natural-key collision
        sensitive_fields: Extra denylisted field names for this type
        immutable_fields: Fields an upsert never overwrites
    """
    name: str
    table: str
    columns: Tuple[Column, ...]
    natural_key: Tuple[str, ...] = ("id",)
    conflict_policy: ConflictPolicy = ConflictPolicy.SKIP_IF_EXISTS
    sensitive_fields: Tuple[str, ...] = ()
    immutable_fields: Tuple[str, ...] = ("id", "createdAt")

    def __post_init__(self):
        names = {c.name for c in self.columns}
        missing = [k for k in self.natural_key if k not in names]
        if missing:
            raise ValueError(f"{self.name}: natural key fields not in columns: {missing}")

    @property
    def primary_key(self) -> Column:
        for column in self.columns:
            if column.primary_key:
                return column
        raise ValueError(f"{self.name} has no primary key column")

    @property
    def parents(self) -> List[str]:
        """Entity types this one references, in column order, without duplicates."""
        seen: List[str] = []
        for column in self.columns:
            if column.references and column.references != self.name and column.references not in seen:
                seen.append(column.references)
        return seen

    def column(self, name: str) -> Optional[Column]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def natural_key_values(self, values: Dict[str, Any]) -> Optional[Tuple[Any, ...]]:
        """Natural key of a record, or None if any part of it is missing."""
        key = tuple(values.get(name) for name in self.natural_key)
        if any(part is None for part in key):
            return None
        return key

    def key_label(self, values: Dict[str, Any]) -> str:
        """Readable key for warnings and logs, e.g. "username=alice"."""
        return ", ".join(f"{name}={values.get(name)!r}" for name in self.natural_key)


class EntityRegistry:
    """
    Ordered collection of entity definitions.

    Policies are fixed here at definition time; nothing at restore time can
    change how a given entity type resolves conflicts.
    """

    def __init__(self, definitions: Iterable[EntityDefinition]):
        self._definitions: Dict[str, EntityDefinition] = {}
        for definition in definitions:
            if definition.name in self._definitions:
                raise ValueError(f"Duplicate entity type: {definition.name}")
            self._definitions[definition.name] = definition
        self._import_order = self._compute_import_order()

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def __iter__(self):
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def get(self, name: str) -> EntityDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise KeyError(f"Unknown entity type: {name}") from None

    @property
    def names(self) -> List[str]:
        """Entity type names in registry order."""
        return list(self._definitions)

    def import_order(self) -> List[str]:
        """Entity type names with every parent before its children."""
        return list(self._import_order)

    def subset(self, names: Iterable[str]) -> "EntityRegistry":
        """
        Registry restricted to the given types, keeping registry order.

        References to types outside the subset are ignored for ordering.
        """
        wanted = set(names)
        unknown = wanted - set(self._definitions)
        if unknown:
            raise KeyError(f"Unknown entity types: {sorted(unknown)}")
        return EntityRegistry(d for d in self._definitions.values() if d.name in wanted)

    def _compute_import_order(self) -> List[str]:
        # Kahn's algorithm; ties go to the type registered first so the
        # order is fixed for a given registry.
        position = {name: i for i, name in enumerate(self._definitions)}
        pending: Dict[str, set] = {
            name: {p for p in d.parents if p in self._definitions}
            for name, d in self._definitions.items()
        }
        order: List[str] = []

        while pending:
            ready = sorted(
                (name for name, deps in pending.items() if not deps),
                key=position.__getitem__,
            )
            if not ready:
                raise ValueError(
                    f"Foreign-key cycle between entity types: {sorted(pending)}"
                )
            chosen = ready[0]
            order.append(chosen)
            del pending[chosen]
            for deps in pending.values():
                deps.discard(chosen)

        return order


# ============================================================================
# CRM entity definitions
# ============================================================================

def _crm_definitions() -> List[EntityDefinition]:
    skip = ConflictPolicy.SKIP_IF_EXISTS
    upsert = ConflictPolicy.UPSERT_ON_CONFLICT
    append = ConflictPolicy.APPEND_ALWAYS

    return [
        EntityDefinition(
            name="users",
            table="users",
            natural_key=("username",),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("username", "text", required=True, unique=True),
                Column("password", "text", required=True,
                       default=generate_temporary_password, credential=True),
                Column("email", "text"),
                Column("name", "text"),
                Column("role", "text", required=True, default="user"),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="properties",
            table="properties",
            conflict_policy=skip,
            columns=(
                _id(),
                Column("title", "text", required=True),
                Column("description", "text"),
                Column("type", "text", required=True, default="sale"),
                Column("status", "text", required=True, default="active"),
                Column("price", "real", required=True),
                Column("currency", "text", required=True, default="EUR"),
                Column("size", "real"),
                Column("rooms", "integer"),
                Column("bedrooms", "integer"),
                Column("bathrooms", "integer"),
                Column("location", "text", required=True),
                Column("city", "text", required=True),
                Column("postalCode", "text"),
                Column("region", "text"),
                Column("country", "text", required=True, default="Germany"),
                Column("latitude", "real"),
                Column("longitude", "real"),
                Column("yearBuilt", "integer"),
                Column("hasGarden", "boolean", default=False),
                Column("hasBalcony", "boolean", default=False),
                Column("hasParking", "boolean", default=False),
                Column("energyRating", "text"),
                Column("slug", "text", unique=True),
                Column("metaTitle", "text"),
                Column("metaDescription", "text"),
                Column("metadata", "json"),
                _created_at(),
                _updated_at(),
                Column("publishedAt", "timestamp"),
            ),
        ),
        EntityDefinition(
            name="inquiries",
            table="inquiries",
            conflict_policy=skip,
            sensitive_fields=("internalNotes", "creditScore"),
            columns=(
                _id(),
                Column("propertyId", "integer", references="properties"),
                Column("firstName", "text", required=True),
                Column("lastName", "text", required=True),
                Column("email", "text", required=True),
                Column("phone", "text"),
                Column("subject", "text"),
                Column("message", "text", required=True),
                Column("inquiryType", "text", required=True, default="general"),
                Column("status", "text", required=True, default="new"),
                Column("priority", "text", default="medium"),
                Column("isRead", "boolean", default=False),
                Column("assignedTo", "integer", references="users"),
                Column("source", "text", default="website"),
                Column("internalNotes", "text"),
                _created_at(),
                _updated_at(),
                Column("resolvedAt", "timestamp"),
            ),
        ),
        EntityDefinition(
            name="newsletterSubscribers",
            table="newsletter_subscribers",
            natural_key=("email",),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("email", "text", required=True, unique=True),
                Column("name", "text"),
                Column("isActive", "boolean", default=True),
                Column("interests", "json"),
                Column("subscribedAt", "timestamp", default=utc_now_iso),
                Column("unsubscribedAt", "timestamp"),
            ),
        ),
        EntityDefinition(
            name="newsletters",
            table="newsletters",
            conflict_policy=skip,
            columns=(
                _id(),
                Column("subject", "text", required=True),
                Column("content", "text", required=True),
                Column("status", "text", required=True, default="draft"),
                Column("sentAt", "timestamp"),
                Column("recipientCount", "integer", default=0),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="siteContent",
            table="site_content",
            natural_key=("section",),
            conflict_policy=upsert,
            columns=(
                _id(),
                Column("section", "text", required=True, unique=True),
                Column("content", "json", required=True),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="galleryImages",
            table="gallery_images",
            conflict_policy=skip,
            columns=(
                _id(),
                Column("propertyId", "integer", references="properties"),
                Column("filename", "text", required=True),
                Column("originalName", "text"),
                Column("url", "text"),
                Column("alt", "text"),
                Column("caption", "text"),
                Column("category", "text", default="general"),
                Column("size", "integer"),
                Column("sortOrder", "integer", default=0),
                Column("isPrimary", "boolean", default=False),
                Column("imageType", "text", default="standard"),
                _created_at(),
            ),
        ),
        EntityDefinition(
            name="customers",
            table="customers",
            conflict_policy=skip,
            sensitive_fields=("ssn", "taxId", "creditScore", "bankAccount", "creditCard"),
            columns=(
                _id(),
                Column("firstName", "text", required=True),
                Column("lastName", "text", required=True),
                Column("email", "text", unique=True),
                Column("phone", "text"),
                Column("address", "text"),
                Column("city", "text"),
                Column("postalCode", "text"),
                Column("country", "text", default="Germany"),
                Column("occupation", "text"),
                Column("notes", "text"),
                Column("propertyTypes", "json"),
                Column("maxBudget", "real"),
                Column("minBudget", "real"),
                Column("preferredLocations", "json"),
                Column("customerType", "text", default="prospect"),
                Column("source", "text"),
                Column("tags", "json"),
                _created_at(),
                _updated_at(),
                Column("lastContactAt", "timestamp"),
            ),
        ),
        EntityDefinition(
            name="customerInteractions",
            table="customer_interactions",
            conflict_policy=append,
            columns=(
                _id(),
                Column("customerId", "integer", references="customers"),
                Column("agentId", "integer", references="users"),
                Column("type", "text", required=True),
                Column("subject", "text"),
                Column("content", "text"),
                Column("interactionDate", "timestamp", required=True, default=utc_now_iso),
                _created_at(),
            ),
        ),
        EntityDefinition(
            name="appointments",
            table="appointments",
            conflict_policy=skip,
            sensitive_fields=("internalNotes", "privateNotes"),
            columns=(
                _id(),
                Column("customerId", "integer", references="customers"),
                Column("propertyId", "integer", references="properties"),
                Column("agentId", "integer", references="users"),
                Column("title", "text", required=True),
                Column("description", "text"),
                Column("startTime", "timestamp", required=True),
                Column("endTime", "timestamp", required=True),
                Column("location", "text"),
                Column("type", "text", required=True, default="viewing"),
                Column("status", "text", required=True, default="scheduled"),
                Column("contactName", "text"),
                Column("contactEmail", "text"),
                Column("contactPhone", "text"),
                Column("notes", "text"),
                Column("reminderSent", "boolean", default=False),
                Column("calendarSyncStatus", "text", default="pending"),
                Column("assignedTo", "integer", references="users"),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="leads",
            table="leads",
            conflict_policy=skip,
            columns=(
                _id(),
                Column("customerId", "integer", required=True, references="customers"),
                Column("propertyId", "integer", references="properties"),
                Column("stage", "text", required=True, default="new"),
                Column("dealType", "text", required=True, default="not_specified"),
                Column("value", "real", required=True, default=0),
                Column("probability", "integer", required=True, default=25),
                Column("expectedCloseDate", "timestamp"),
                Column("actualCloseDate", "timestamp"),
                Column("title", "text"),
                Column("notes", "text"),
                Column("lostReason", "text"),
                Column("assignedTo", "integer", references="users"),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="customerSegments",
            table="customer_segments",
            natural_key=("name",),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("name", "text", required=True, unique=True),
                Column("description", "text"),
                Column("criteria", "json"),
                _created_at(),
            ),
        ),
        EntityDefinition(
            name="customerSegmentMemberships",
            table="customer_segment_memberships",
            natural_key=("customerId", "segmentId"),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("customerId", "integer", required=True, references="customers"),
                Column("segmentId", "integer", required=True, references="customerSegments"),
                _created_at(),
            ),
        ),
        EntityDefinition(
            name="designSettings",
            table="design_settings",
            natural_key=("name",),
            conflict_policy=upsert,
            columns=(
                _id(),
                Column("name", "text", required=True, unique=True, default="default"),
                Column("settings", "json", required=True),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="calendarConnections",
            table="calendar_connections",
            natural_key=("provider", "providerId"),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("userId", "integer", references="users"),
                Column("provider", "text", required=True),
                Column("providerId", "text", required=True),
                Column("email", "text", required=True),
                Column("name", "text"),
                Column("calendarName", "text"),
                Column("accessToken", "text"),
                Column("refreshToken", "text"),
                Column("tokenExpiresAt", "timestamp"),
                Column("isActive", "boolean", default=True),
                Column("lastSyncAt", "timestamp"),
                Column("syncEnabled", "boolean", default=True),
                Column("syncStatus", "text"),
                Column("syncDirection", "text"),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="calendarEvents",
            table="calendar_events",
            natural_key=("calendarConnectionId", "externalId"),
            conflict_policy=skip,
            columns=(
                _id(),
                Column("calendarConnectionId", "integer", references="calendarConnections"),
                Column("appointmentId", "integer", references="appointments"),
                Column("externalId", "text", required=True),
                Column("title", "text", required=True),
                Column("description", "text"),
                Column("startTime", "timestamp", required=True),
                Column("endTime", "timestamp", required=True),
                Column("location", "text"),
                Column("status", "text", required=True),
                Column("syncStatus", "text", default="synced"),
                _created_at(),
                _updated_at(),
            ),
        ),
        EntityDefinition(
            name="calendarSyncLogs",
            table="calendar_sync_logs",
            conflict_policy=append,
            columns=(
                _id(),
                Column("calendarConnectionId", "integer", references="calendarConnections"),
                Column("syncType", "text", required=True),
                Column("status", "text", required=True),
                Column("message", "text"),
                Column("eventCount", "integer", default=0),
                Column("errorDetails", "json"),
                Column("dataSnapshot", "json"),
                Column("startedAt", "timestamp"),
                _created_at(),
            ),
        ),
    ]


def default_registry() -> EntityRegistry:
    """The full CRM registry, in snapshot order."""
    return EntityRegistry(_crm_definitions())
