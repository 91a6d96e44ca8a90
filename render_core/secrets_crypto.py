"""AES-256-GCM helpers for tenant credentials stored at rest.

Payload (base64): ``[12 byte IV][16 byte tag][ciphertext]``; the AES key is
SHA-256 of ``ENCRYPTION_KEY``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from render_core.errors import render_error

_IV_LEN = 12
_TAG_LEN = 16
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def _derive_key(encryption_key: str) -> bytes:
    raw = encryption_key.strip()
    if not raw:
        raise render_error("ENCRYPTION_KEY_MISSING")
    return hashlib.sha256(raw.encode("utf-8")).digest()


def key_fingerprint(encryption_key: str) -> str:
    """Short, log-safe fingerprint to compare keys across environments."""
    return hashlib.sha256(encryption_key.strip().encode("utf-8")).hexdigest()[:10]


def looks_like_plaintext_api_key(value: str) -> bool:
    stripped = value.strip()
    return stripped.startswith("sk-") and len(stripped) >= 20


def encrypt_secret(plain: str, *, encryption_key: str) -> str:
    value = plain.strip()
    if not value:
        raise ValueError("encrypt_secret: empty input")
    iv = os.urandom(_IV_LEN)
    sealed = AESGCM(_derive_key(encryption_key)).encrypt(iv, value.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt_secret(payload: str, *, encryption_key: str) -> str:
    raw = payload.strip()
    if not raw:
        raise render_error("KEY_DECRYPT_FAILED", "stored credential is empty")
    if looks_like_plaintext_api_key(raw):
        return raw
    if not _BASE64_RE.match(raw):
        raise render_error("KEY_DECRYPT_FAILED", "stored credential is not base64")
    try:
        blob = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise render_error("KEY_DECRYPT_FAILED", "stored credential is not valid base64") from exc
    if len(blob) < _IV_LEN + _TAG_LEN + 1:
        raise render_error("KEY_DECRYPT_FAILED", f"ciphertext too short ({len(blob)} bytes)")

    iv = blob[:_IV_LEN]
    tag = blob[_IV_LEN : _IV_LEN + _TAG_LEN]
    ciphertext = blob[_IV_LEN + _TAG_LEN :]
    try:
        plain = AESGCM(_derive_key(encryption_key)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise render_error(
            "KEY_DECRYPT_FAILED",
            "authentication failed (wrong ENCRYPTION_KEY or corrupted ciphertext)",
        ) from exc
    return plain.decode("utf-8")
