# =============================================================================
# 🔐 utils/encryption.py
# Verschlüsselung für gespeicherte Smart-QR-Konfigurationen (AES-256-GCM)
# =============================================================================

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

SALT_SIZE = 16
NONCE_SIZE = 12


def get_encryption_key() -> bytes:
    """
    Lädt den Schlüssel aus ENCRYPTION_KEY (auf 32 Bytes gekürzt/aufgefüllt).
    Ohne Variable wird ein flüchtiger Schlüssel erzeugt.
    """
    env_key = os.getenv("ENCRYPTION_KEY")
    if env_key:
        key_bytes = env_key.encode("utf-8")[:32]
        return key_bytes.ljust(32, b"\x00")

    logger.warning("⚠️ ENCRYPTION_KEY nicht gesetzt – gespeicherte Konfigurationen überleben keinen Neustart.")
    return os.urandom(32)


def derive_key(secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


class ConfigEncryption:
    """
    Verschlüsselt JSON-Konfigurationen.
    Format: base64(salt || nonce || ciphertext+tag), Salt und Nonce pro Datensatz.
    """

    def __init__(self, key: Optional[bytes] = None, iterations: Optional[int] = None):
        self._key = key or get_encryption_key()
        self._iterations = iterations or int(os.getenv("ENCRYPTION_ITERATIONS", "480000"))

    def encrypt(self, data: Dict[str, Any]) -> str:
        if not data:
            return ""
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        aesgcm = AESGCM(derive_key(self._key, salt, self._iterations))
        plaintext = json.dumps(data, ensure_ascii=False).encode("utf-8")
        ciphertext = aesgcm.encrypt(nonce, plaintext, None)
        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt(self, encrypted: str) -> Optional[Dict[str, Any]]:
        if not encrypted:
            return None
        try:
            combined = base64.b64decode(encrypted.encode("ascii"))
            salt = combined[:SALT_SIZE]
            nonce = combined[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
            ciphertext = combined[SALT_SIZE + NONCE_SIZE:]
            aesgcm = AESGCM(derive_key(self._key, salt, self._iterations))
            payload = json.loads(aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8"))
        except (InvalidTag, ValueError) as exc:
            logger.warning(f"⚠️ Konfiguration konnte nicht entschlüsselt werden: {exc!r}")
            return None
        return payload if isinstance(payload, dict) else None


_encryption_instance: Optional[ConfigEncryption] = None


def get_encryptor() -> ConfigEncryption:
    global _encryption_instance
    if _encryption_instance is None:
        _encryption_instance = ConfigEncryption()
    return _encryption_instance


def encrypt_config(data: Dict[str, Any]) -> str:
    return get_encryptor().encrypt(data)


def decrypt_config(encrypted: str) -> Optional[Dict[str, Any]]:
    return get_encryptor().decrypt(encrypted)
