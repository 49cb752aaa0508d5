"""AES-256-GCM helpers for channel credential blobs.

Stored form of an encrypted blob::

    {
        "pageId": "...",
        "encryptedCredentials": {
            "encryptedData": "<base64 nonce + ciphertext>",
            "encryptedFields": ["accessToken", "appSecret"],
        },
    }
"""

from __future__ import annotations

import base64
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings

ENCRYPTED_KEY = "encryptedCredentials"
SENSITIVE_FIELDS = ("accessToken", "appSecret", "refreshToken")

_AAD = b"channel-credentials"
_NONCE_BYTES = 12


class CredentialDecryptionError(ValueError):
    pass


def _get_encryption_key(key_hex: str | None = None) -> bytes:
    key_hex = key_hex or settings.credentials_encryption_key
    if not key_hex:
        raise CredentialDecryptionError(
            "CREDENTIALS_ENCRYPTION_KEY not configured. Generate with: openssl rand -hex 32"
        )
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise CredentialDecryptionError("CREDENTIALS_ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != 32:
        raise CredentialDecryptionError("CREDENTIALS_ENCRYPTION_KEY must be 32 bytes hex (64 hex chars)")
    return key


def encrypt_credentials(credentials: dict, *, key_hex: str | None = None) -> dict:
    """Move sensitive fields of ``credentials`` into an encrypted section."""
    sensitive = {field: credentials[field] for field in SENSITIVE_FIELDS if credentials.get(field)}
    blob = {key: value for key, value in credentials.items() if key not in sensitive and key != ENCRYPTED_KEY}
    if not sensitive:
        return blob
    aesgcm = AESGCM(_get_encryption_key(key_hex))
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = aesgcm.encrypt(nonce, json.dumps(sensitive).encode("utf-8"), _AAD)
    blob[ENCRYPTED_KEY] = {
        "encryptedData": base64.b64encode(nonce + ciphertext).decode(),
        "encryptedFields": sorted(sensitive),
    }
    return blob


def decrypt_credentials(blob: dict, *, key_hex: str | None = None) -> dict:
    """Return a plain credential dict with encrypted fields merged back in."""
    section = blob.get(ENCRYPTED_KEY)
    plain = {key: value for key, value in blob.items() if key != ENCRYPTED_KEY}
    if not section:
        return plain
    if not isinstance(section, dict) or not section.get("encryptedData"):
        raise CredentialDecryptionError("Malformed encrypted credentials section")
    try:
        data = base64.b64decode(section["encryptedData"])
    except (ValueError, TypeError) as exc:
        raise CredentialDecryptionError("Encrypted credentials are not valid base64") from exc
    aesgcm = AESGCM(_get_encryption_key(key_hex))
    try:
        decrypted = aesgcm.decrypt(data[:_NONCE_BYTES], data[_NONCE_BYTES:], _AAD)
    except InvalidTag as exc:
        raise CredentialDecryptionError("Encrypted credentials failed authentication") from exc
    plain.update(json.loads(decrypted.decode("utf-8")))
    return plain
