"""Discovery of vGPU state for NVIDIA SR-IOV GPUs from sysfs."""

from __future__ import annotations

import logging
import os
import re
import stat
from collections.abc import Iterator
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SUPPORTED_TYPES_DIR = "mdev_supported_types"
AVAILABLE_TYPES_FILE_NAME = "available_instances"
VGPU_NAME_FILE = "name"

MDEV_ROOT = "/sys/bus/mdev/devices"
SYS_DEV_ROOT = "/sys/bus/pci/devices"
MDEV_BUS_CLASS_ROOT = "/sys/class/mdev_bus"

VGPU_ENABLED = "vGPUConfigured"

_WHITESPACE = re.compile(r"[\t\n\f\r ]+")
_STRIP_PATTERN = re.compile(r"^a-zA-Z0-9_-.]+")


@dataclass
class VGPUDeviceStatus:
    """The configured and available vGPU types of a virtual function."""

    uuid: str = ""
    vgpu_status: str = ""
    configured_vgpu_type_name: str = ""
    available_types: dict[str, str] = field(default_factory=dict)


def _read_trimmed(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read().strip("\n")


def fetch_available_types(managed_bus_path: str, device_address: str) -> dict[str, str]:
    """Map the names of vGPU types with a free instance to their type directory."""
    types_dir = os.path.join(managed_bus_path, device_address, SUPPORTED_TYPES_DIR)
    try:
        os.lstat(types_dir)
    except OSError as exc:
        raise OSError(
            f"could not get {SUPPORTED_TYPES_DIR} directory information for "
            f"device: {device_address}, err: {exc}"
        ) from exc

    available: dict[str, str] = {}
    for type_dir in sorted(
        os.path.join(types_dir, name)
        for name in os.listdir(types_dir)
        if name.startswith("nvidia")
    ):
        instances_path = os.path.join(type_dir, AVAILABLE_TYPES_FILE_NAME)
        try:
            instances = _read_trimmed(instances_path)
        except FileNotFoundError:
            continue
        if instances == "1":
            name = _read_trimmed(os.path.join(type_dir, VGPU_NAME_FILE))
            available[name] = type_dir.split("/")[-1]
    return available


def _walk(path: str) -> Iterator[tuple[str, os.stat_result]]:
    """Yield path and everything below it in lexical order, not following links."""
    info = os.lstat(path)
    yield path, info
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name))


def fetch_vgpu_status(
    mdev_root: str, pci_device_root: str, managed_bus_path: str, device_address: str
) -> VGPUDeviceStatus:
    """Work out which vGPU, if any, is configured on the device and what is free."""
    # After a node reboot the mdev tree is gone; an empty status lets the
    # vGPU configuration run again.
    if not os.path.exists(mdev_root):
        return VGPUDeviceStatus()

    uuid = ""
    device_type = ""
    for path, info in _walk(mdev_root):
        logger.debug("checking path %s", path)
        if not stat.S_ISLNK(info.st_mode):
            continue
        try:
            resolved = os.path.realpath(path, strict=True)
        except OSError as exc:
            raise OSError(f"error resolving symlink {path}:{exc}") from exc
        if device_address not in resolved:
            continue

        uuid = path.split("/")[-1]
        logger.debug("found device %s", resolved)
        mdev_file = os.path.join(resolved, "mdev_type")
        try:
            mdev_type = os.path.realpath(mdev_file, strict=True)
        except OSError as exc:
            raise OSError(f"error resolving symlink {mdev_file}: {exc}") from exc
        device_type = mdev_type.split("/")[-1]

    status = VGPUDeviceStatus()
    if uuid:
        status.uuid = uuid
        status.vgpu_status = VGPU_ENABLED

    if device_type:
        name_path = os.path.join(
            pci_device_root, device_address, SUPPORTED_TYPES_DIR, device_type, "name"
        )
        try:
            status.configured_vgpu_type_name = _read_trimmed(name_path)
        except OSError as exc:
            raise OSError(
                f"error reading name for VGPU device {device_address}: {exc}"
            ) from exc

    status.available_types = fetch_available_types(managed_bus_path, device_address)
    return status


def eval_phys_fn(device_path: str) -> str:
    """Return the PCI address of the physical function behind a virtual function."""
    try:
        resolved = os.path.realpath(os.path.join(device_path, "physfn"), strict=True)
    except OSError as exc:
        raise OSError(f"error querying physical function: {exc}") from exc
    return resolved.split("/")[-1]


def generate_device_name(device_name: str) -> str:
    """Turn a vGPU type name into an nvidia.com resource name."""
    name = device_name.strip().upper()
    name = name.replace("/", "_").replace(".", "_")
    name = _WHITESPACE.sub("_", name)
    name = _STRIP_PATTERN.sub("", name)
    return f"nvidia.com/{name}"