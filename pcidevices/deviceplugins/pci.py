"""Device plugin that hands whole PCI devices to containers through VFIO."""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import threading
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from dataclasses import dataclass

from pcidevices.deviceplugins.common import (
    HOST_ROOT_MOUNT,
    PCI_RESOURCE_PREFIX,
    VFIO_DEVICE_PATH,
    AllocateRequest,
    AllocateResponse,
    ContainerAllocateResponse,
    Device,
    DeviceHealth,
    Health,
    format_vfio_device_specs,
    resource_name_to_env_var,
    socket_path,
)
from pcidevices.deviceplugins.usb import OP_CREATE, OP_REMOVE, OP_RENAME

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
DEREGISTER_TIMEOUT = 1.0
_QUEUE_WAIT = 0.05


@dataclass
class PCIDevice:
    """A PCI device that can be passed through to a container."""

    pci_id: str
    pci_address: str
    iommu_group: str
    driver: str = ""
    numa_node: int = 0


def construct_devices(
    pci_devices: Iterable[PCIDevice], iommu_to_pci_map: MutableMapping[str, str]
) -> list[Device]:
    """Build advertised devices, recording each address's IOMMU group in the map."""
    devices: list[Device] = []
    for pci_device in pci_devices:
        iommu_to_pci_map[pci_device.pci_address] = pci_device.iommu_group
        numa_nodes = [pci_device.numa_node] if pci_device.numa_node >= 0 else None
        devices.append(
            Device(id=pci_device.pci_id, health=Health.UNHEALTHY, numa_nodes=numa_nodes)
        )
    return devices


class PCIDevicePlugin:
    """Advertises a set of PCI devices under one resource name."""

    def __init__(
        self,
        pci_devices: Iterable[PCIDevice],
        resource_name: str,
        socket: str | None = None,
        device_root: str = HOST_ROOT_MOUNT,
        poll_interval: float = POLL_INTERVAL,
        deregister_timeout: float = DEREGISTER_TIMEOUT,
    ) -> None:
        self.pci_devices = list(pci_devices)
        self.resource_name = resource_name
        self.socket_path = socket or socket_path(resource_name.replace("/", "-"))
        self.device_path = VFIO_DEVICE_PATH
        self.device_root = device_root
        self.iommu_to_pci_map: dict[str, str] = {}
        self.devs = construct_devices(self.pci_devices, self.iommu_to_pci_map)
        self.started = False
        self.initialized = False
        self._poll_interval = poll_interval
        self._deregister_timeout = deregister_timeout
        self._lock = threading.Lock()
        self._health: queue.Queue[DeviceHealth] = queue.Queue()
        self._done = threading.Event()
        self._deregistered = threading.Event()

    def get_count(self) -> int:
        """Return how many advertised devices are healthy."""
        with self._lock:
            return sum(1 for dev in self.devs if dev.health == Health.HEALTHY)

    def allocate(self, request: AllocateRequest) -> AllocateResponse:
        """Grant the requested devices, with every device of their IOMMU groups."""
        env_var = resource_name_to_env_var(PCI_RESOURCE_PREFIX, self.resource_name)
        allocated: list[str] = []
        response = AllocateResponse()
        for container_request in request.container_requests:
            specs = []
            for dev_id in container_request.devices_ids:
                logger.debug("looking up deviceID %s in map %s", dev_id, self.iommu_to_pci_map)
                iommu_group = self.iommu_to_pci_map.get(dev_id)
                if iommu_group is None:
                    continue
                allocated.append(dev_id)
                allocated.extend(
                    address
                    for address, group in self.iommu_to_pci_map.items()
                    if group == iommu_group
                )
                specs.extend(format_vfio_device_specs(iommu_group))
            response.container_responses.append(
                ContainerAllocateResponse(
                    envs={env_var: ",".join(allocated)}, devices=specs
                )
            )
        logger.debug("Allocate response %s", response)
        return response

    def mark_pci_device_as_healthy(self, pci_address: str) -> None:
        """Queue a change marking the device healthy."""
        self._health.put(DeviceHealth(dev_id=pci_address, health=Health.HEALTHY))

    def mark_pci_device_as_unhealthy(self, pci_address: str) -> None:
        """Queue a change marking the device unhealthy."""
        self._health.put(DeviceHealth(dev_id=pci_address, health=Health.UNHEALTHY))

    def add_device(self, pci_device: PCIDevice) -> None:
        """Add a device unless its address is already known, and mark it healthy."""
        with self._lock:
            if pci_device.pci_address in self.iommu_to_pci_map:
                return
            logger.info("Adding new claimed %s to device plugin", self.resource_name)
            self.pci_devices.append(pci_device)
            self.devs.extend(construct_devices([pci_device], self.iommu_to_pci_map))
        self.mark_pci_device_as_healthy(pci_device.pci_address)

    def remove_device(self, pci_address: str) -> None:
        """Mark the device unhealthy so the kubelet stops handing it out."""
        logger.info("Removing %s from device plugin", self.resource_name)
        self.mark_pci_device_as_unhealthy(pci_address)

    def _monitored_paths(self) -> dict[str, str]:
        vfio_root = os.path.join(self.device_root, self.device_path.lstrip("/"))
        with self._lock:
            return {
                os.path.normpath(os.path.join(vfio_root, self.iommu_to_pci_map[dev.id])): dev.id
                for dev in self.devs
                if dev.id in self.iommu_to_pci_map
            }

    def handle_fs_event(self, path: str, op: str) -> bool:
        """React to a filesystem event; return True when watching should end."""
        logger.debug("health Event: %s %s", op, path)
        dev_id = self._monitored_paths().get(os.path.normpath(path))
        if dev_id is not None:
            if op == OP_CREATE:
                logger.info("monitored device %s appeared", self.resource_name)
                self.mark_pci_device_as_healthy(dev_id)
            elif op in (OP_REMOVE, OP_RENAME):
                logger.info("monitored device %s disappeared", self.resource_name)
                self.mark_pci_device_as_unhealthy(dev_id)
            return False
        if path == self.socket_path and op == OP_REMOVE:
            logger.info(
                "device socket file for device %s was removed, kubelet probably restarted.",
                self.resource_name,
            )
            return True
        return False

    def _poll_health(self) -> None:
        present = {path: os.path.exists(path) for path in self._monitored_paths()}
        socket_watched = os.path.exists(self.socket_path)
        while not self._done.wait(self._poll_interval):
            for path in self._monitored_paths():
                exists = os.path.exists(path)
                if path in present and present[path] != exists:
                    self.handle_fs_event(path, OP_CREATE if exists else OP_REMOVE)
                present[path] = exists
            if socket_watched and not os.path.exists(self.socket_path):
                if self.handle_fs_event(self.socket_path, OP_REMOVE):
                    return

    def _apply(self, change: DeviceHealth) -> None:
        with self._lock:
            for dev in self.devs:
                if dev.id == change.dev_id:
                    dev.health = change.health

    def _snapshot(self) -> list[Device]:
        with self._lock:
            return [dataclasses.replace(dev) for dev in self.devs]

    def list_and_watch(self) -> Iterator[list[Device]]:
        """Yield the device list now and on every health change, then an empty list."""
        self._deregistered.clear()
        threading.Thread(target=self._poll_health, daemon=True).start()
        yield self._snapshot()
        while not self._done.is_set():
            try:
                change = self._health.get(timeout=_QUEUE_WAIT)
            except queue.Empty:
                continue
            self._apply(change)
            devices = self._snapshot()
            logger.debug("Sending ListAndWatchResponse with devices %s", devices)
            yield devices
        # An empty list makes the kubelet drop the devices promptly.
        yield []
        self._deregistered.set()

    def set_started(self) -> None:
        """Mark the plugin as started and ready to serve."""
        self._done.clear()
        with self._lock:
            self.started = True
            self.initialized = True
        logger.info("Started DevicePlugin: %s", self.resource_name)

    def stop(self) -> None:
        """Stop serving, give watchers time to deregister and remove the socket."""
        self._done.set()
        self._deregistered.wait(self._deregister_timeout)
        with self._lock:
            self.initialized = False
            self.started = False
        try:
            os.remove(self.socket_path)
        except FileNotFoundError:
            pass


def find(
    resource_name: str, plugins: Mapping[str, PCIDevicePlugin]
) -> PCIDevicePlugin | None:
    """Return the plugin registered for resource_name, or None."""
    return plugins.get(resource_name)


def create(
    resource_name: str, pci_address_initial: str, pci_devices: Iterable[PCIDevice]
) -> PCIDevicePlugin:
    """Create a plugin for the devices and mark the initial address healthy."""
    plugin = PCIDevicePlugin(pci_devices, resource_name)
    plugin.mark_pci_device_as_healthy(pci_address_initial)
    return plugin