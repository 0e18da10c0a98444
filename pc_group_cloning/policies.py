"""Group-name remapping rules applied before groups are added to a target."""
from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional

from .config import DEFAULT_OFFICE_GROUP_MAPPINGS, CloneConfig


logger = logging.getLogger(__name__)


class GroupRemapPolicy:
    """Identity policy. Subclasses override :meth:`remap_group`."""

    def applies_to(self, target_computer: str) -> bool:
        return False

    def remap_group(self, group_name: str, target_computer: str) -> str:
        return group_name

    def remap(self, groups: Iterable[str], target_computer: str) -> List[str]:
        return [self.remap_group(group, target_computer) for group in groups]


class OfficeGroupRemapPolicy(GroupRemapPolicy):
    """Collapse edition-qualified Office groups onto their canonical group.

    Only targets whose name contains ``trigger`` (case-insensitive) are
    remapped; every other target keeps the requested group names.
    """

    def __init__(
        self,
        mappings: Optional[Mapping[str, str]] = None,
        trigger: str = "a",
    ) -> None:
        self.mappings = dict(DEFAULT_OFFICE_GROUP_MAPPINGS if mappings is None else mappings)
        self.trigger = trigger

    @classmethod
    def from_config(cls, config: CloneConfig) -> "OfficeGroupRemapPolicy":
        return cls(config.office_group_mappings, config.remap_trigger)

    def applies_to(self, target_computer: str) -> bool:
        if not self.trigger:
            return False
        return self.trigger.lower() in (target_computer or "").lower()

    def remap_group(self, group_name: str, target_computer: str) -> str:
        if not self.applies_to(target_computer):
            return group_name
        mapped = self.mappings.get(group_name)
        if mapped is None:
            return group_name
        logger.info("Converting Office group %s to %s for %s", group_name, mapped, target_computer)
        return mapped


__all__ = ["GroupRemapPolicy", "OfficeGroupRemapPolicy"]
