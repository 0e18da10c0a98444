"""Retired-computers OU setting."""
from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from .models import RetiredOUConfig
from .settings_store import SettingsVersion, VersionedSettingsStore


logger = logging.getLogger(__name__)

RETIRED_OU_KEY = "retired_ou"


def _to_config(version: SettingsVersion) -> Optional[RetiredOUConfig]:
    path = str(version.payload.get("retired_computers_ou") or "").strip()
    if not path:
        return None
    return RetiredOUConfig(
        retired_computers_ou=path,
        last_updated=version.updated_at,
        updated_by=version.updated_by,
        is_active=version.is_active,
        version=version.id,
    )


class OUConfigStore:
    def __init__(self, settings: VersionedSettingsStore) -> None:
        self._settings = settings

    def get_config(self) -> Optional[RetiredOUConfig]:
        try:
            version = self._settings.current(RETIRED_OU_KEY)
        except sqlite3.Error as exc:
            logger.error("Error getting retired computers OU: %s", exc)
            return None
        if version is None:
            return None
        return _to_config(version)

    def get_retired_ou(self) -> Optional[str]:
        config = self.get_config()
        return config.retired_computers_ou if config else None

    def history(self, limit: int = 50) -> List[RetiredOUConfig]:
        """Every saved retired OU, newest first; only the first can be active."""

        try:
            versions = self._settings.history(RETIRED_OU_KEY, limit)
        except sqlite3.Error as exc:
            logger.error("Error reading retired computers OU history: %s", exc)
            return []
        return [config for config in map(_to_config, versions) if config is not None]

    def save_retired_ou(self, path: str, updated_by: str) -> bool:
        cleaned = (path or "").strip()
        if not cleaned:
            logger.warning("Refusing to save an empty retired computers OU")
            return False
        try:
            self._settings.replace(
                RETIRED_OU_KEY, {"retired_computers_ou": cleaned}, updated_by
            )
        except sqlite3.Error as exc:
            logger.error("Error saving retired computers OU: %s", exc)
            return False
        logger.info("Retired computers OU set to %s by %s", cleaned, updated_by or "unknown")
        return True


__all__ = ["OUConfigStore", "RETIRED_OU_KEY"]
