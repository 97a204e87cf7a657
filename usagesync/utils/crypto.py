"""Vendor credential encryption.

Credentials are stored as ``iv:tag:ciphertext`` (hex) under AES-256-GCM with
the key from CREDENTIAL_ENCRYPTION_KEY (64 hex chars or 44 base64 chars).
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 12
TAG_LENGTH = 16


class CredentialError(RuntimeError):
    pass


def _key() -> bytes:
    raw = os.environ.get("CREDENTIAL_ENCRYPTION_KEY")
    if not raw:
        raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not set")
    if len(raw) == 64:
        return bytes.fromhex(raw)
    if len(raw) == 44:
        return base64.b64decode(raw)
    raise CredentialError("CREDENTIAL_ENCRYPTION_KEY must be 32 bytes (64 hex chars or 44 base64 chars)")


def encrypt_credentials(credentials: dict[str, Any]) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_key()).encrypt(iv, json.dumps(credentials).encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_credentials(token: str) -> dict[str, Any]:
    try:
        iv_hex, tag_hex, ciphertext_hex = token.split(":")
        iv, tag, ciphertext = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ciphertext_hex)
    except ValueError as exc:
        raise CredentialError("Malformed encrypted credentials") from exc
    try:
        plaintext = AESGCM(_key()).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError) as exc:
        raise CredentialError("Unable to decrypt vendor credentials") from exc
    data = json.loads(plaintext)
    if not isinstance(data, dict):
        raise CredentialError("Decrypted credentials are not a JSON object")
    return data
