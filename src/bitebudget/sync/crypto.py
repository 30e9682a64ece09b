"""Cifrado autenticado del snapshot con clave derivada de una frase.

La clave se deriva con PBKDF2-HMAC-SHA256 y el contenido se sella con
Fernet. El blob resultante es un sobre JSON que lleva la sal y las
iteraciones junto al token.
"""

from __future__ import annotations

import base64
import json
import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from bitebudget.sync.errors import DecryptionError
from bitebudget.sync.snapshot import SyncSnapshot

logger = logging.getLogger(__name__)

BLOB_FORMAT = "bitebudget-sync"
BLOB_VERSION = 1
KDF_NAME = "pbkdf2-sha256"
DEFAULT_ITERATIONS = 390_000
MAX_ITERATIONS = 10 * DEFAULT_ITERATIONS
SALT_BYTES = 16


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def encrypt_payload(
    data: bytes, passphrase: str, *, iterations: int = DEFAULT_ITERATIONS
) -> str:
    """Encrypt bytes into a JSON envelope.

    Args:
        data: Plaintext bytes.
        passphrase: User passphrase.
        iterations: PBKDF2 iterations stored in the envelope.

    Returns:
        Envelope as a JSON string.

    Raises:
        ValueError: If the passphrase is empty.
    """
    if not passphrase:
        raise ValueError("An encryption passphrase is required")

    salt = os.urandom(SALT_BYTES)
    token = Fernet(derive_key(passphrase, salt, iterations)).encrypt(data)
    envelope = {
        "format": BLOB_FORMAT,
        "version": BLOB_VERSION,
        "kdf": KDF_NAME,
        "iterations": iterations,
        "salt": base64.b64encode(salt).decode("ascii"),
        "token": token.decode("ascii"),
    }
    return json.dumps(envelope, sort_keys=True)


def decrypt_payload(blob: str | bytes, passphrase: str) -> bytes:
    """Decrypt a JSON envelope produced by :func:`encrypt_payload`.

    Raises:
        ValueError: If the passphrase is empty.
        DecryptionError: Wrong passphrase, tampered token or malformed blob.
    """
    if not passphrase:
        raise ValueError("An encryption passphrase is required")

    try:
        envelope = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecryptionError("Encrypted blob is not a valid envelope") from exc
    if not isinstance(envelope, dict) or envelope.get("format") != BLOB_FORMAT:
        raise DecryptionError("Encrypted blob has an unknown format")
    if envelope.get("kdf") != KDF_NAME:
        raise DecryptionError(f"Unsupported key derivation: {envelope.get('kdf')}")

    try:
        iterations = int(envelope["iterations"])
        salt = base64.b64decode(envelope["salt"], validate=True)
        token = str(envelope["token"]).encode("ascii")
    except (KeyError, TypeError, ValueError) as exc:
        raise DecryptionError("Encrypted blob is missing fields") from exc
    if not 1 <= iterations <= MAX_ITERATIONS:
        raise DecryptionError(f"Encrypted blob has invalid iterations: {iterations}")

    try:
        key = derive_key(passphrase, salt, iterations)
    except (ValueError, OverflowError) as exc:
        raise DecryptionError("Encrypted blob has invalid key parameters") from exc

    try:
        return Fernet(key).decrypt(token)
    except InvalidToken as exc:
        logger.warning("Snapshot decryption failed (wrong passphrase or corrupted)")
        raise DecryptionError(
            "Could not decrypt backup: wrong passphrase or corrupted data"
        ) from exc


def encrypt_snapshot(
    snapshot: SyncSnapshot, passphrase: str, *, iterations: int = DEFAULT_ITERATIONS
) -> str:
    """Encrypt the canonical JSON of a snapshot."""
    payload = snapshot.to_json().encode("utf-8")
    return encrypt_payload(payload, passphrase, iterations=iterations)


def decrypt_snapshot(blob: str | bytes, passphrase: str) -> SyncSnapshot:
    """Decrypt and parse a snapshot.

    Raises:
        DecryptionError: If the blob cannot be decrypted.
        SnapshotFormatError: If the plaintext is not a valid snapshot.
    """
    return SyncSnapshot.from_json(decrypt_payload(blob, passphrase))
