"""Service-account storage for directory operations."""
from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

from .ad_client import verify_credentials
from .config import DirectoryConfig
from .encryption import SymmetricCipher
from .models import ServiceCredentials, ServiceIdentity
from .settings_store import SettingsVersion, VersionedSettingsStore


logger = logging.getLogger(__name__)

SERVICE_IDENTITY_KEY = "service_identity"

Binder = Callable[[str, str, str], bool]


def _identity_from_version(version: SettingsVersion) -> ServiceIdentity:
    payload = version.payload
    return ServiceIdentity(
        domain=str(payload.get("domain") or ""),
        username=str(payload.get("username") or ""),
        encrypted_secret=str(payload.get("encrypted_secret") or ""),
        last_updated=version.updated_at,
        updated_by=version.updated_by,
        is_active=version.is_active,
        version=version.id,
    )


class CredentialVault:
    """Holds the single active service identity and hands out decrypted credentials."""

    def __init__(
        self,
        settings: VersionedSettingsStore,
        cipher: SymmetricCipher,
        binder: Optional[Binder] = None,
    ) -> None:
        self._settings = settings
        self._cipher = cipher
        self._binder = binder

    @classmethod
    def for_directory(
        cls,
        settings: VersionedSettingsStore,
        cipher: SymmetricCipher,
        directory: DirectoryConfig,
    ) -> "CredentialVault":
        def _bind(domain: str, username: str, secret: str) -> bool:
            return verify_credentials(directory, domain, username, secret)

        return cls(settings, cipher, binder=_bind)

    def get_active_identity(self) -> Optional[ServiceIdentity]:
        try:
            version = self._settings.current(SERVICE_IDENTITY_KEY)
        except sqlite3.Error as exc:
            logger.error("Error reading the active service account: %s", exc)
            return None
        return _identity_from_version(version) if version else None

    def get_credentials(self) -> Optional[ServiceCredentials]:
        """Domain-qualified username and plaintext secret, or ``None`` when unset.

        A secret that fails to decrypt comes back as ``""`` so the directory
        rejects the bind instead of this call raising.
        """

        identity = self.get_active_identity()
        if identity is None:
            return None
        secret = self._cipher.decrypt(identity.encrypted_secret)
        return ServiceCredentials(username=identity.qualified_username, password=secret)

    def save_identity(self, domain: str, username: str, secret: str, updated_by: str) -> bool:
        identity = ServiceIdentity(
            domain=domain.strip(),
            username=username.strip(),
            encrypted_secret=self._cipher.encrypt(secret),
        )
        try:
            self._settings.replace(SERVICE_IDENTITY_KEY, identity.to_payload(), updated_by)
        except sqlite3.Error as exc:
            logger.error("Error saving service account: %s", exc)
            return False
        logger.info(
            "Service account %s saved by %s", identity.qualified_username, updated_by or "unknown"
        )
        return True

    def test_identity(self, domain: str, username: str, secret: str) -> bool:
        """Bind with the supplied credentials without storing them."""

        if self._binder is None:
            logger.warning("No directory binder configured; cannot test service account")
            return False
        try:
            return bool(self._binder(domain.strip(), username.strip(), secret))
        except Exception as exc:  # pragma: no cover - binder implementations catch LDAP errors
            logger.warning("Service account test failed for user %s: %s", username, exc)
            return False


__all__ = ["CredentialVault", "SERVICE_IDENTITY_KEY"]
