"""Wiring of the stores, vault and orchestrator from an :class:`AppConfig`."""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from .ad_client import ADClient, ad_client
from .audit import AuditSink
from .config import AppConfig
from .database import SqliteStore
from .encryption import SymmetricCipher
from .models import CloneOutcome, CloneRequest
from .orchestrator import CloneOrchestrator, OperationContext
from .ou_config import OUConfigStore
from .policies import OfficeGroupRemapPolicy
from .settings_store import VersionedSettingsStore
from .vault import CredentialVault


logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: SqliteStore
    settings: VersionedSettingsStore
    cipher: SymmetricCipher
    vault: CredentialVault
    ou_store: OUConfigStore
    audit: AuditSink

    @contextlib.contextmanager
    def directory(self) -> Iterator[ADClient]:
        """Directory client authenticated through the vault's service identity."""

        with ad_client(self.config.directory, self.vault) as client:
            yield client

    def orchestrator(self, client: Optional[ADClient]) -> CloneOrchestrator:
        return CloneOrchestrator(
            client,
            self.ou_store,
            self.audit,
            policy=OfficeGroupRemapPolicy.from_config(self.config.clone),
            config=self.config.clone,
        )

    def clone(
        self,
        request: CloneRequest,
        username: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> CloneOutcome:
        """Run one clone with a fresh directory client.

        A client that cannot be built still leaves a failed audit record.
        """

        outcome: Optional[CloneOutcome] = None
        try:
            with self.directory() as client:
                outcome = self.orchestrator(client).execute(request, username=username, context=context)
        except Exception as exc:
            if outcome is not None:
                logger.warning("Error closing directory connection after clone: %s", exc)
                return outcome
            return self.orchestrator(None).record_failure(request, exc, username)
        return outcome

    def close(self) -> None:
        self.store.close()


def build_services(config: AppConfig) -> Services:
    store = SqliteStore(config.storage.database_file)
    settings = VersionedSettingsStore(store)
    cipher = SymmetricCipher(config.encryption.key)
    return Services(
        config=config,
        store=store,
        settings=settings,
        cipher=cipher,
        vault=CredentialVault.for_directory(settings, cipher, config.directory),
        ou_store=OUConfigStore(settings),
        audit=AuditSink(store),
    )


__all__ = ["Services", "build_services"]
