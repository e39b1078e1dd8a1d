"""Mapping of PCI devices to their IOMMU groups."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable

logger = logging.getLogger(__name__)

SYS_KERNEL_IOMMU_GROUPS = "/sys/kernel/iommu_groups"

_INTEGER = re.compile(r"[+-]?[0-9]+")


def group_map_for_pci_devices(group_paths: Iterable[str]) -> dict[str, int]:
    """Map each PCI address to its IOMMU group number.

    Each path has the form /sys/kernel/iommu_groups/GROUP/devices/ADDRESS.
    Paths whose group is not a number are logged and skipped; a path too
    short to hold a PCI address raises ValueError.
    """
    group_map: dict[str, int] = {}
    for group_path in group_paths:
        parts = group_path.split("/")
        if len(parts) <= 6:
            raise ValueError(
                f"groupPath {group_path} does not contain a valid PCI address"
            )
        device_addr, group = parts[6], parts[4]
        if _INTEGER.fullmatch(group):
            group_map[device_addr] = int(group)
        else:
            logger.error(
                "groupPath %s contains an invalid IOMMU Group: %r", group_path, group
            )
    return group_map


def group_paths(root: str = SYS_KERNEL_IOMMU_GROUPS) -> list[str]:
    """Return every ROOT/GROUP/devices/DEVICE path, in lexical order.

    Raises OSError when the groups or a group's devices cannot be listed.
    """
    paths: list[str] = []
    for group in sorted(os.listdir(root)):
        devices_dir = f"{root}/{group}/devices"
        for device in sorted(os.listdir(devices_dir)):
            paths.append(f"{devices_dir}/{device}")
    return paths