"""
Stable serialization of a snapshot's data section, and its checksum.

The same data must hash the same no matter which back end produced it or in
which order a JSON parser handed back the keys, so the checksum is taken over
a canonical form: keys sorted at every level, strings NFC-normalized, compact
separators, dates as ISO-8601. Record order inside each list is significant.
"""

import hashlib
import json
import unicodedata
from collections.abc import Mapping
from typing import Any, Dict, List

CHECKSUM_ALGORITHM = "sha256"


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {_normalize(str(k)): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return unicodedata.normalize("NFC", str(value))


def canonicalize(obj: Any) -> str:
    """Canonical JSON text of obj."""
    return json.dumps(_normalize(obj), sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def compute_data_checksum(data: Dict[str, List[Dict[str, Any]]]) -> str:
    """
    Checksum of a snapshot data section.

    Args:
        data: Entity type to list of record field maps

    Returns:
        "sha256:<hex digest>" of the canonical JSON of data
    """
    digest = hashlib.sha256(canonicalize(data).encode("utf-8")).hexdigest()
    return f"{CHECKSUM_ALGORITHM}:{digest}"


def verify_data_checksum(data: Dict[str, List[Dict[str, Any]]], checksum: str) -> bool:
    """
    Check a data section against a manifest checksum.

    Unknown algorithms never verify.
    """
    algorithm, _, _ = str(checksum).partition(":")
    if algorithm != CHECKSUM_ALGORITHM:
        return False
    return compute_data_checksum(data) == checksum
