"""Encryption of tenant credentials at rest."""

from relay_core.security.secrets import SecretCipher, SecretName, TenantSecretStore, parse_master_key

__all__ = ["SecretCipher", "SecretName", "TenantSecretStore", "parse_master_key"]
