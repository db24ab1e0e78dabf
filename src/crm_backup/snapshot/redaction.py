"""
Sensitive field redaction for snapshot records.

Two rules are applied at every nesting level of a record:
- Keys on the entity type's denylist are removed (case-insensitive exact match)
- Keys whose lowercase form contains a universal sensitive substring are removed

Only key names are inspected, never values. The substring rule over-redacts
harmless names such as "keyword"; leaking nothing wins over keeping them.
Removals made by the substring rule alone are reported separately so they
can be audited.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, TYPE_CHECKING

from ..core.models import Record

if TYPE_CHECKING:
    from ..store.registry import EntityRegistry

logger = logging.getLogger(__name__)

# Field names treated as sensitive for every entity type
UNIVERSAL_SENSITIVE_FIELDS = (
    "password",
    "passwordHash",
    "hash",
    "salt",
    "resetToken",
    "sessionToken",
    "refreshToken",
    "apiKey",
    "accessToken",
    "secret",
    "webhookSecret",
    "clientSecret",
    "privateKey",
    "token",
    "key",
    "auth",
    "authToken",
    "bearer",
    "oauth",
    "jwt",
    "credential",
    "secretKey",
    "encryptionKey",
    "decryptionKey",
    "signingKey",
    "verificationKey",
)

# Substrings matched against lowercased key names
UNIVERSAL_SENSITIVE_PATTERNS = tuple(
    sorted({name.lower() for name in UNIVERSAL_SENSITIVE_FIELDS})
)


@dataclass(frozen=True)
class RedactionPolicy:
    """
    Redaction rules for one entity type.

    Attributes:
        entity_type: Entity type the policy applies to
        denylist: Lowercased field names removed by exact match
        patterns: Lowercased substrings; any key containing one is removed
    """
    entity_type: str
    denylist: FrozenSet[str]
    patterns: Tuple[str, ...] = UNIVERSAL_SENSITIVE_PATTERNS

    @classmethod
    def build(
        cls,
        entity_type: str,
        extra_fields: Iterable[str] = (),
        patterns: Optional[Iterable[str]] = None,
    ) -> "RedactionPolicy":
        names = set(UNIVERSAL_SENSITIVE_FIELDS) | set(extra_fields)
        if patterns is None:
            patterns = UNIVERSAL_SENSITIVE_PATTERNS
        return cls(
            entity_type=entity_type,
            denylist=frozenset(name.lower() for name in names),
            patterns=tuple(p.lower() for p in patterns),
        )

    def is_denylisted(self, key: str) -> bool:
        return key.lower() in self.denylist

    def matches_pattern(self, key: str) -> bool:
        lowered = key.lower()
        return any(pattern in lowered for pattern in self.patterns)


@dataclass
class RedactionAudit:
    """
    What a redaction removed, as dotted paths ("[]" marks array elements).

    Attributes:
        denylisted: Paths removed by the explicit denylist
        heuristic: Paths removed only because of a substring match
    """
    denylisted: List[str] = field(default_factory=list)
    heuristic: List[str] = field(default_factory=list)

    @property
    def removed(self) -> List[str]:
        return self.denylisted + self.heuristic

    def merge(self, other: "RedactionAudit") -> None:
        self.denylisted.extend(other.denylisted)
        self.heuristic.extend(other.heuristic)


class Redactor:
    """
    Strips sensitive fields from records of arbitrary shape.

    Redaction is idempotent and never modifies its input.
    """

    def __init__(
        self,
        registry: Optional["EntityRegistry"] = None,
        patterns: Optional[Iterable[str]] = None,
    ):
        """
        Initialize the redactor.

        Args:
            registry: Entity registry supplying per-type extra denylists.
                Types not in the registry get the universal rules only.
            patterns: Override for the universal substring list
        """
        self._registry = registry
        self._patterns = tuple(patterns) if patterns is not None else None
        self._policies: Dict[str, RedactionPolicy] = {}

    def policy_for(self, entity_type: str) -> RedactionPolicy:
        if entity_type not in self._policies:
            extra: Tuple[str, ...] = ()
            if self._registry is not None and entity_type in self._registry:
                extra = self._registry.get(entity_type).sensitive_fields
            self._policies[entity_type] = RedactionPolicy.build(
                entity_type, extra_fields=extra, patterns=self._patterns
            )
        return self._policies[entity_type]

    def redact(self, record: Record) -> Record:
        """
        Return a copy of the record with sensitive fields removed.

        Args:
            record: The record to redact

        Returns:
            New Record with the same entity type
        """
        redacted, _ = self.redact_with_audit(record)
        return redacted

    def redact_values(self, values: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        """Redact a bare field map as if it were a record of entity_type."""
        return self.redact(Record(entity_type, values)).values

    def redact_with_audit(self, record: Record) -> Tuple[Record, RedactionAudit]:
        """
        Redact a record and report which paths were removed and why.

        Returns:
            Tuple of (redacted record, audit)
        """
        policy = self.policy_for(record.entity_type)
        audit = RedactionAudit()
        values = self._redact_value(record.values, policy, "", audit)
        return Record(record.entity_type, values), audit

    def _redact_value(self, value: Any, policy: RedactionPolicy, path: str, audit: RedactionAudit) -> Any:
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                name = str(key)
                child_path = f"{path}.{name}" if path else name
                if policy.is_denylisted(name):
                    audit.denylisted.append(child_path)
                    continue
                if policy.matches_pattern(name):
                    audit.heuristic.append(child_path)
                    continue
                result[key] = self._redact_value(item, policy, child_path, audit)
            return result

        if isinstance(value, list):
            return [self._redact_value(item, policy, f"{path}[]", audit) for item in value]

        return value


def redact_record(record: Record, registry: Optional["EntityRegistry"] = None) -> Record:
    """
    Convenience function to redact a single record.

    Args:
        record: The record to redact
        registry: Optional registry for per-type denylists

    Returns:
        New Record with sensitive fields removed
    """
    return Redactor(registry=registry).redact(record)
