"""Authenticated encryption of ephemeral deposit keys at rest (AES-256-GCM)."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from railgate.errors import CustodyError

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12


class KeyVaultError(CustodyError):
    """Decryption failed closed: tampered blob, wrong key or wrong binding."""


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.urlsafe_b64decode(text.encode("ascii"))


@dataclass(frozen=True)
class SealedSecret:
    """Ciphertext plus nonce. Opaque outside the vault."""

    ciphertext: bytes
    nonce: bytes

    def to_dict(self) -> dict[str, str]:
        return {"ciphertext": _b64e(self.ciphertext), "nonce": _b64e(self.nonce)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SealedSecret:
        try:
            return cls(
                ciphertext=_b64d(str(data["ciphertext"])),
                nonce=_b64d(str(data["nonce"])),
            )
        except (KeyError, binascii.Error, ValueError) as e:
            raise KeyVaultError(f"Sealed secret is malformed: {e}") from e


def load_vault_key(encoded: str) -> bytes:
    """Decode a urlsafe-base64 vault key and check it is 256 bits."""
    try:
        key = _b64d(encoded.strip())
    except (binascii.Error, ValueError) as e:
        raise KeyVaultError("Vault key is not valid base64.") from e
    if len(key) != 32:
        raise KeyVaultError(f"Vault key must be 32 bytes, got {len(key)}.")
    return key


class KeyVault:
    """Stateless encrypt/decrypt wrapper around a process-wide AES key.

    ``associated_data`` binds a ciphertext to its owner (the deposit
    address), so a blob copied onto another order fails to decrypt.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise KeyVaultError(f"Vault key must be 32 bytes, got {len(key)}.")
        self._aead = AESGCM(key)

    @classmethod
    def from_encoded(cls, encoded: str) -> KeyVault:
        return cls(load_vault_key(encoded))

    def __repr__(self) -> str:
        return "KeyVault(<redacted>)"

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> SealedSecret:
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext, associated_data)
        return SealedSecret(ciphertext=ciphertext, nonce=nonce)

    def decrypt(self, sealed: SealedSecret, associated_data: bytes | None = None) -> bytes:
        """Return the plaintext or raise ``KeyVaultError``. Never returns garbage."""
        if len(sealed.nonce) != _NONCE_BYTES:
            raise KeyVaultError("Sealed secret has an invalid nonce length.")
        try:
            return self._aead.decrypt(sealed.nonce, sealed.ciphertext, associated_data)
        except InvalidTag as e:
            logger.error(
                "CRITICAL: key vault authentication failed; ciphertext tampered "
                "or vault key mismatch."
            )
            raise KeyVaultError("Key material failed authentication.") from e
