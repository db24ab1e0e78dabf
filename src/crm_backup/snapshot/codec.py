"""
Snapshot serialization.

Snapshots are UTF-8 JSON documents. Optionally the JSON is wrapped in an
AES-256-GCM envelope:

    MAGIC (8 bytes) | nonce (12 bytes) | ciphertext + tag

Keys that are not 32 bytes long are hashed with SHA-256 first.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from ..core.exceptions import FormatError
from .models import Snapshot

logger = logging.getLogger(__name__)

MAGIC = b"CRMBAK1\n"
NONCE_SIZE = 12
DEFAULT_KEY_ENV_VAR = "SNAPSHOT_ENCRYPTION_KEY"


def _aes_key(key: Union[str, bytes]) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    if len(key) != 32:
        key = hashlib.sha256(key).digest()
    return key


def _aesgcm(key: Union[str, bytes]):
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
    except ImportError:
        raise ImportError(
            "cryptography library is required for snapshot encryption. "
            "Install with: pip install cryptography"
        )
    return AESGCM(_aes_key(key))


def is_encrypted(payload: bytes) -> bool:
    """True if the payload carries the encryption envelope."""
    return payload.startswith(MAGIC)


def encrypt_payload(data: bytes, key: Union[str, bytes]) -> bytes:
    """
    Encrypt serialized snapshot bytes.

    Args:
        data: Plain JSON bytes
        key: Encryption key

    Returns:
        Enveloped ciphertext
    """
    if not key:
        raise ValueError("Encryption key is required for encryption")
    nonce = os.urandom(NONCE_SIZE)
    return MAGIC + nonce + _aesgcm(key).encrypt(nonce, data, None)


def decrypt_payload(payload: bytes, key: Optional[Union[str, bytes]]) -> bytes:
    """
    Decrypt an enveloped snapshot.

    Raises:
        FormatError: If no key is given, the envelope is truncated, or the
            key does not authenticate the ciphertext
    """
    if not key:
        raise FormatError("Snapshot is encrypted but no decryption key was provided")

    body = payload[len(MAGIC):]
    if len(body) <= NONCE_SIZE:
        raise FormatError("Encrypted snapshot is truncated")

    from cryptography.exceptions import InvalidTag

    nonce, ciphertext = body[:NONCE_SIZE], body[NONCE_SIZE:]
    try:
        return _aesgcm(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise FormatError("Snapshot could not be decrypted: wrong key or corrupted file") from e


def encode_snapshot(
    snapshot: Snapshot,
    encryption_key: Optional[Union[str, bytes]] = None,
    indent: Optional[int] = 2,
) -> bytes:
    """
    Serialize a snapshot, encrypting it when a key is given.

    Args:
        snapshot: Snapshot to serialize
        encryption_key: Optional key for the AES-GCM envelope
        indent: JSON indentation (None for compact output)

    Returns:
        Serialized bytes
    """
    data = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=indent).encode("utf-8")
    if encryption_key:
        return encrypt_payload(data, encryption_key)
    return data


def decode_document(payload: bytes, encryption_key: Optional[Union[str, bytes]] = None) -> Any:
    """
    Parse serialized snapshot bytes into a plain document.

    No structural checks are made here; see restore.validation.

    Raises:
        FormatError: If the payload cannot be decrypted or is not UTF-8 JSON
    """
    if is_encrypted(payload):
        payload = decrypt_payload(payload, encryption_key)

    try:
        return json.loads(payload.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise FormatError(f"Snapshot is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise FormatError(f"Snapshot is not valid JSON: {e}") from e


def write_snapshot(
    snapshot: Snapshot,
    path: Union[str, Path],
    encryption_key: Optional[Union[str, bytes]] = None,
) -> Path:
    """Serialize a snapshot to a file and return its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = encode_snapshot(snapshot, encryption_key=encryption_key)
    with open(path, "wb") as f:
        f.write(payload)
    logger.info(f"Wrote snapshot to {path} ({len(payload):,} bytes{', encrypted' if encryption_key else ''})")
    return path


def load_key_from_env(env_var: str = DEFAULT_KEY_ENV_VAR) -> Optional[bytes]:
    """Encryption key from the environment, or None if unset."""
    value = os.environ.get(env_var)
    return value.encode("utf-8") if value else None
