"""Authenticated symmetric encryption with NaCl secretbox."""

from __future__ import annotations

import hashlib

import nacl.exceptions
import nacl.secret
import nacl.utils

KEY_SIZE = nacl.secret.SecretBox.KEY_SIZE
NONCE_SIZE = nacl.secret.SecretBox.NONCE_SIZE


class CryptoError(Exception):
    """Raised when encryption or decryption fails."""


def derive_key(passphrase: str | bytes) -> bytes:
    """Derive a 32-byte key from a passphrase with SHA-256."""
    material = passphrase.encode() if isinstance(passphrase, str) else bytes(passphrase)
    return hashlib.sha256(material).digest()


def _box(key: bytes) -> nacl.secret.SecretBox:
    if len(key) != KEY_SIZE:
        raise CryptoError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    return nacl.secret.SecretBox(bytes(key))


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt ``plaintext``; the result is the nonce followed by the ciphertext."""
    box = _box(key)
    try:
        nonce = nacl.utils.random(NONCE_SIZE)
    except Exception as exc:
        raise CryptoError(f"failed to generate nonce: {exc}") from exc
    return bytes(box.encrypt(bytes(plaintext), nonce))


def decrypt(encrypted: bytes, key: bytes) -> bytes:
    """Decrypt data produced by :func:`encrypt`."""
    if len(encrypted) < NONCE_SIZE:
        raise CryptoError(f"encrypted data too short (minimum {NONCE_SIZE} bytes)")
    box = _box(key)
    encrypted = bytes(encrypted)
    nonce, ciphertext = encrypted[:NONCE_SIZE], encrypted[NONCE_SIZE:]
    try:
        return bytes(box.decrypt(ciphertext, nonce))
    except (nacl.exceptions.CryptoError, ValueError, TypeError) as exc:
        raise CryptoError("decryption failed (wrong key or corrupted data)") from exc