"""Shared device plugin types and sysfs helpers for PCI devices."""

from __future__ import annotations

import enum
import logging
import os
import posixpath
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

VFIO_DEVICE_PATH = "/dev/vfio/"
VFIO_MOUNT = "/dev/vfio/vfio"
PCI_BASE_PATH = "/sys/bus/pci/devices"
CONNECTION_TIMEOUT = 120.0
PCI_RESOURCE_PREFIX = "PCI_RESOURCE"
DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
HOST_ROOT_MOUNT = "/proc/1/root/"
DEVICE_PERMISSIONS = "mrw"


class Health(str, enum.Enum):
    """Health of a device as reported to the kubelet."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass
class DeviceSpec:
    """A device node to expose inside a container."""

    container_path: str
    host_path: str
    permissions: str = DEVICE_PERMISSIONS


@dataclass
class Device:
    """A device advertised by a plugin, with optional NUMA placement."""

    id: str
    health: Health = Health.UNHEALTHY
    numa_nodes: list[int] | None = None


@dataclass
class DeviceHealth:
    """A health change for one device."""

    dev_id: str
    health: Health


@dataclass
class ContainerAllocateRequest:
    """The device IDs requested for one container."""

    devices_ids: list[str] = field(default_factory=list)


@dataclass
class AllocateRequest:
    """An allocation request covering several containers."""

    container_requests: list[ContainerAllocateRequest] = field(default_factory=list)


@dataclass
class ContainerAllocateResponse:
    """Environment and device nodes granted to one container."""

    envs: dict[str, str] = field(default_factory=dict)
    devices: list[DeviceSpec] = field(default_factory=list)


@dataclass
class AllocateResponse:
    """The answer to an AllocateRequest."""

    container_responses: list[ContainerAllocateResponse] = field(default_factory=list)


def _last_element(path: str) -> str:
    return path.rsplit("/", 1)[-1]


class DeviceUtilsHandler:
    """Reads PCI device attributes from a sysfs device directory."""

    def get_device_iommu_group(self, basepath: str, pci_address: str) -> str:
        """Return the IOMMU group the device's iommu_group link points at."""
        link = os.path.join(basepath, pci_address, "iommu_group")
        try:
            target = os.readlink(link)
        except OSError as exc:
            logger.error(
                "failed to read iommu_group link %s for device %s: %s",
                link,
                pci_address,
                exc,
            )
            raise
        return _last_element(target)

    def get_device_driver(self, basepath: str, pci_address: str) -> str:
        """Return the name of the driver bound to the device."""
        link = os.path.join(basepath, pci_address, "driver")
        try:
            target = os.readlink(link)
        except OSError as exc:
            logger.error(
                "failed to read driver link %s for device %s: %s", link, pci_address, exc
            )
            raise
        return _last_element(target)

    def get_device_numa_node(self, basepath: str, pci_address: str) -> int:
        """Return the device's NUMA node; -1 when the file cannot be read.

        A value that cannot be parsed as an integer yields 0.
        """
        path = os.path.join(basepath, pci_address, "numa_node")
        try:
            with open(path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            logger.error(
                "failed to read numa_node %s for device %s: %s", path, pci_address, exc
            )
            return -1
        text = raw.strip().decode("utf-8", errors="replace")
        try:
            return int(text, 10)
        except ValueError:
            logger.error(
                "failed to convert numa node value %r of device %s", text, pci_address
            )
            return 0

    def get_device_pci_id(self, basepath: str, pci_address: str) -> str:
        """Return the lower-cased PCI_ID from the device's uevent file."""
        path = os.path.join(basepath, pci_address, "uevent")
        with open(path, encoding="utf-8", errors="replace") as handle:
            for raw in handle:
                line = raw.rstrip("\n").removesuffix("\r")
                if line.startswith("PCI_ID"):
                    _, _, value = line.rpartition("=") if "=" not in line else line.partition("=")
                    return value.strip().lower()
        raise ValueError("no pci_id is found")


def socket_path(device_name: str) -> str:
    """Return the kubelet device plugin socket path for a device name."""
    return posixpath.join(DEVICE_PLUGIN_PATH, f"kubevirt-{device_name}.sock")


def resource_name_to_env_var(prefix: str, resource_name: str) -> str:
    """Build the environment variable name that carries allocated devices."""
    name = resource_name.upper().replace("/", "_").replace(".", "_")
    return f"{prefix}_{name}"


def format_vfio_device_specs(dev_id: str) -> list[DeviceSpec]:
    """Return the VFIO container device and the device node of one group."""
    vfio_device = posixpath.join(VFIO_DEVICE_PATH, dev_id)
    return [
        DeviceSpec(container_path=VFIO_MOUNT, host_path=VFIO_MOUNT),
        DeviceSpec(container_path=vfio_device, host_path=vfio_device),
    ]