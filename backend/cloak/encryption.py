from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cloak.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16


def derive_key(organization_id: str, server_secret: str) -> bytes:
    """Derive the 32-byte AES-256 key for one organization.

    ``SHA-256(organization_id || server_secret)``.  Pure and total: any
    process holding the secret derives the same key, so no key store is
    needed.  The flip side is that the secret is the single point of
    rotation risk for every tenant at once.
    """
    material = (organization_id + server_secret).encode("utf-8")
    return hashlib.sha256(material).digest()


def encrypt(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt *plaintext* with *key*.

    Returns ``(ciphertext, nonce)`` where *nonce* is a random 12-byte value
    and *ciphertext* carries the 16-byte tag at its end.
    """
    aesgcm = AESGCM(key)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = aesgcm.encrypt(nonce, plaintext, None)
    return ciphertext, nonce


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """AES-256-GCM decrypt *ciphertext* with *key* and *nonce*.

    Raises ``cryptography.exceptions.InvalidTag`` on authentication failure.
    """
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, None)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Nonce plus ciphertext-with-tag, stored as ``base64(iv || ciphertext)``."""

    iv: bytes
    ciphertext: bytes

    def to_base64(self) -> str:
        return base64.b64encode(self.iv + self.ciphertext).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> "EncryptedEnvelope":
        """Parse a stored envelope; raises ``DecryptionError`` if malformed."""
        if not isinstance(value, str) or not value:
            raise DecryptionError("Envelope is empty or not a string")
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Envelope is not valid base64") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Envelope is too short")
        return cls(iv=raw[:NONCE_SIZE], ciphertext=raw[NONCE_SIZE:])


class TenantCrypto:
    """Per-organization authenticated encryption for report and message bodies.

    The server secret is injected here rather than read from the environment
    so that callers (and tests) decide where it comes from.  A missing secret
    does not stop construction; every operation then raises
    ``ConfigurationError`` instead of falling back to a default key.
    """

    def __init__(self, server_secret: str | None) -> None:
        self._server_secret = server_secret or None

    @property
    def is_configured(self) -> bool:
        return self._server_secret is not None

    def _key_for(self, organization_id: str) -> bytes:
        if self._server_secret is None:
            logger.critical(
                "Encryption requested but the server secret is not configured; "
                "refusing to encrypt or decrypt"
            )
            raise ConfigurationError("Server encryption secret is not configured")
        if not isinstance(organization_id, str) or not organization_id:
            raise ValueError("organization_id must be a non-empty string")
        return derive_key(organization_id, self._server_secret)

    def key_fingerprint(self, organization_id: str) -> str:
        """SHA-256 hex digest of the derived key; safe to store, not the key."""
        return hashlib.sha256(self._key_for(organization_id)).hexdigest()

    # -- bytes ----------------------------------------------------------------

    def encrypt(self, organization_id: str, plaintext: bytes) -> EncryptedEnvelope:
        key = self._key_for(organization_id)
        ciphertext, nonce = encrypt(plaintext, key)
        return EncryptedEnvelope(iv=nonce, ciphertext=ciphertext)

    def decrypt(
        self,
        organization_id: str,
        envelope: EncryptedEnvelope | str,
    ) -> bytes:
        """Decrypt *envelope* (object or its base64 form) for *organization_id*.

        A wrong organization yields a different key, so the tag check fails
        and ``DecryptionError`` is raised; garbage is never returned.
        """
        key = self._key_for(organization_id)
        if isinstance(envelope, str):
            envelope = EncryptedEnvelope.from_base64(envelope)
        try:
            return decrypt(envelope.ciphertext, key, envelope.iv)
        except InvalidTag as exc:
            logger.error(
                "Envelope authentication failed for organization %s",
                organization_id,
            )
            raise DecryptionError("Envelope authentication failed") from exc

    # -- text / JSON helpers ----------------------------------------------------

    def encrypt_text(self, organization_id: str, text: str) -> str:
        return self.encrypt(organization_id, text.encode("utf-8")).to_base64()

    def decrypt_text(self, organization_id: str, envelope: EncryptedEnvelope | str) -> str:
        plaintext = self.decrypt(organization_id, envelope)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not UTF-8 text") from exc

    def encrypt_json(self, organization_id: str, payload: dict[str, Any]) -> str:
        return self.encrypt_text(
            organization_id, json.dumps(payload, ensure_ascii=False)
        )

    def decrypt_json(
        self, organization_id: str, envelope: EncryptedEnvelope | str
    ) -> dict[str, Any]:
        text = self.decrypt_text(organization_id, envelope)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid JSON") from exc
