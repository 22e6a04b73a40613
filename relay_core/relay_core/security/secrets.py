"""AES-256-GCM encryption for per-tenant API keys and webhook secrets.

Stored form is ``(ciphertext, key_version)``:

* version 1: ``base64(nonce || ciphertext || tag)`` with a fresh 12-byte
  nonce per value and ``"<tenant>:<name>"`` as associated data, so a value
  copied onto another tenant or secret name fails to decrypt.
* version 0: the plaintext itself.  Written only when no master key is
  configured.  This mode is insecure and is announced with a WARNING.
  Once a key is set, version-0 rows are refused unless
  ``accept_plaintext`` is on.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.errors import SecretDecryptionError
from relay_core.state.repository import TenantSecretRepository

if TYPE_CHECKING:
    from relay_core.config import RelaySettings

logger = logging.getLogger(__name__)

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_NONCE_BYTES = 12

PLAINTEXT_VERSION = 0
AESGCM_VERSION = 1


class SecretName:
    CRM_API_KEY = "crm_api_key"
    PDP_API_KEY = "pdp_api_key"
    WEBHOOK_SECRET = "webhook_secret"


def parse_master_key(raw: str | None) -> bytes | None:
    """Decode a 32-byte key given as 64 hex chars or base64.

    Returns ``None`` for an empty value.

    Raises
    ------
    ValueError
        If a value is given but does not decode to 32 bytes.
    """
    if raw is None or not raw.strip():
        return None
    trimmed = raw.strip()
    if _HEX_KEY_RE.match(trimmed):
        return bytes.fromhex(trimmed)
    try:
        decoded = base64.b64decode(trimmed, validate=True)
    except binascii.Error as exc:
        raise ValueError("Tenant secret key must be 64 hex chars or base64 of 32 bytes") from exc
    if len(decoded) != 32:
        raise ValueError(f"Tenant secret key must decode to 32 bytes, got {len(decoded)}")
    return decoded


class SecretCipher:
    """Encrypts and decrypts secret values with the master key.

    Parameters
    ----------
    master_key:
        Raw key material (hex or base64).  ``None`` selects plaintext
        passthrough mode.
    accept_plaintext:
        Whether version-0 rows may still be read while a master key is
        configured.  Off by default, so a plaintext row planted in the
        database cannot stand in for an encrypted secret; turn it on only
        while re-storing secrets written before the key was set.
    """

    def __init__(self, master_key: str | None, *, accept_plaintext: bool = False) -> None:
        key = parse_master_key(master_key)
        self._aead = AESGCM(key) if key is not None else None
        self._accept_plaintext = accept_plaintext
        if self._aead is None:
            logger.warning(
                "TENANT_SECRET_KEY is not set: tenant secrets are stored in PLAINTEXT. "
                "Configure a 32-byte key before handling real credentials."
            )

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> SecretCipher:
        key = settings.tenant_secret_key.get_secret_value() if settings.tenant_secret_key else None
        return cls(key, accept_plaintext=settings.accept_plaintext_secrets)

    @property
    def insecure(self) -> bool:
        """``True`` when running in plaintext passthrough mode."""
        return self._aead is None

    def encrypt(self, plaintext: str, *, associated_data: str) -> tuple[str, int]:
        """Return ``(stored_value, key_version)`` for *plaintext*."""
        if self._aead is None:
            return plaintext, PLAINTEXT_VERSION
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), associated_data.encode("utf-8"))
        return base64.b64encode(nonce + sealed).decode("ascii"), AESGCM_VERSION

    def decrypt(self, stored: str, key_version: int, *, associated_data: str) -> str:
        if key_version == PLAINTEXT_VERSION:
            if self._aead is None:
                return stored
            if not self._accept_plaintext:
                raise SecretDecryptionError(
                    f"Secret {associated_data} is stored in plaintext but a master key is configured"
                )
            logger.warning("Read plaintext secret %s while a master key is configured; re-store it", associated_data)
            return stored
        if key_version != AESGCM_VERSION:
            raise SecretDecryptionError(f"Unsupported secret version {key_version}")
        if self._aead is None:
            raise SecretDecryptionError("TENANT_SECRET_KEY is not set; cannot decrypt secrets")
        try:
            data = base64.b64decode(stored, validate=True)
        except binascii.Error as exc:
            raise SecretDecryptionError("Stored secret is not valid base64") from exc
        if len(data) <= _NONCE_BYTES:
            raise SecretDecryptionError("Stored secret is truncated")
        nonce, sealed = data[:_NONCE_BYTES], data[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, associated_data.encode("utf-8"))
        except InvalidTag as exc:
            raise SecretDecryptionError("Secret authentication failed (wrong key or tampered value)") from exc
        return plaintext.decode("utf-8")


class TenantSecretStore:
    """Reads and writes one tenant's secrets through a :class:`SecretCipher`."""

    def __init__(self, session: AsyncSession, cipher: SecretCipher, *, tenant_id: str) -> None:
        self._repo = TenantSecretRepository(session, tenant_id=tenant_id)
        self._cipher = cipher
        self._tenant_id = tenant_id

    def _aad(self, name: str) -> str:
        return f"{self._tenant_id}:{name}"

    async def get(self, name: str) -> str | None:
        row = await self._repo.get(name)
        if row is None:
            return None
        return self._cipher.decrypt(row.ciphertext, row.key_version, associated_data=self._aad(name))

    async def put(self, name: str, value: str) -> None:
        stored, version = self._cipher.encrypt(value, associated_data=self._aad(name))
        await self._repo.put(name, stored, version)
        logger.info("Stored secret %s for tenant %s (version=%d)", name, self._tenant_id, version)
