"""Device plugin that hands NVIDIA vGPU mediated devices to containers."""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import threading
from collections.abc import Iterable, Iterator

from pcidevices.deviceplugins.common import (
    HOST_ROOT_MOUNT,
    VFIO_DEVICE_PATH,
    AllocateRequest,
    AllocateResponse,
    ContainerAllocateResponse,
    Device,
    DeviceHealth,
    DeviceSpec,
    Health,
    resource_name_to_env_var,
    socket_path,
)
from pcidevices.deviceplugins.usb import OP_CREATE, OP_REMOVE, OP_RENAME
from pcidevices.gpuhelper import MDEV_ROOT

logger = logging.getLogger(__name__)

VGPU_PREFIX = "MDEV_PCI_RESOURCE"
POLL_INTERVAL = 1.0
DEREGISTER_TIMEOUT = 5.0
_QUEUE_WAIT = 0.05


def construct_vgpu_devices(vgpu_list: Iterable[str]) -> list[Device]:
    """Build unhealthy advertised devices for the given vGPU UUIDs."""
    return [Device(id=uuid, health=Health.UNHEALTHY) for uuid in vgpu_list]


class VGPUDevicePlugin:
    """Advertises the vGPUs of one vGPU type under one resource name."""

    def __init__(
        self,
        vgpu_list: Iterable[str],
        resource_name: str,
        socket: str | None = None,
        device_root: str = HOST_ROOT_MOUNT,
        device_path: str = MDEV_ROOT,
        poll_interval: float = POLL_INTERVAL,
        deregister_timeout: float = DEREGISTER_TIMEOUT,
    ) -> None:
        self.resource_name = resource_name
        self.socket_path = socket or socket_path(resource_name.replace("/", "-"))
        self.device_root = device_root
        self.device_path = device_path
        self.devs = construct_vgpu_devices(vgpu_list)
        self.initialized = False
        self._poll_interval = poll_interval
        self._deregister_timeout = deregister_timeout
        self._lock = threading.Lock()
        self._health: queue.Queue[DeviceHealth] = queue.Queue()
        self._done = threading.Event()
        self._deregistered = threading.Event()

    def get_count(self) -> int:
        """Return how many advertised vGPUs are healthy."""
        with self._lock:
            count = sum(1 for dev in self.devs if dev.health == Health.HEALTHY)
        logger.debug("found device count %d for plugin %s", count, self.resource_name)
        return count

    def allocate(self, request: AllocateRequest) -> AllocateResponse:
        """Grant each requested vGPU whose mediated device exists."""
        logger.debug("Allocate request %s", request)
        env_var = resource_name_to_env_var(VGPU_PREFIX, self.resource_name)
        allocated: list[str] = []
        response = AllocateResponse()
        for container_request in request.container_requests:
            specs: list[DeviceSpec] = []
            for dev_id in container_request.devices_ids:
                logger.debug("trying to allocate device for %s", dev_id)
                try:
                    os.stat(os.path.join(self.device_path, dev_id))
                except OSError as exc:
                    logger.error("error allocating device %s: %s", dev_id, exc)
                    continue
                specs.append(
                    DeviceSpec(
                        container_path=VFIO_DEVICE_PATH, host_path=VFIO_DEVICE_PATH
                    )
                )
                allocated.append(dev_id)
            response.container_responses.append(
                ContainerAllocateResponse(
                    envs={env_var: ",".join(allocated)}, devices=specs
                )
            )
            logger.debug("Allocate response %s", response)
        return response

    def device_exists(self, uuid: str) -> bool:
        """Tell whether the vGPU is advertised by this plugin."""
        with self._lock:
            return any(dev.id == uuid for dev in self.devs)

    def add_device(self, uuid: str) -> None:
        """Advertise a vGPU unless already known, and mark it healthy."""
        with self._lock:
            if any(dev.id == uuid for dev in self.devs):
                return
            self.devs.extend(construct_vgpu_devices([uuid]))
        self.mark_vgpu_device_as_healthy(uuid)

    def remove_device(self, uuid: str) -> None:
        """Mark the vGPU unhealthy so the kubelet stops handing it out."""
        logger.info("Removing %s from device plugin", uuid)
        self.mark_vgpu_device_as_unhealthy(uuid)
        with self._lock:
            for dev in self.devs:
                if dev.id == uuid:
                    dev.health = Health.UNHEALTHY

    def mark_vgpu_device_as_healthy(self, uuid: str) -> None:
        """Queue a change marking the vGPU healthy."""
        self._health.put(DeviceHealth(dev_id=uuid, health=Health.HEALTHY))

    def mark_vgpu_device_as_unhealthy(self, uuid: str) -> None:
        """Queue a change marking the vGPU unhealthy."""
        self._health.put(DeviceHealth(dev_id=uuid, health=Health.UNHEALTHY))

    def _monitored_paths(self) -> dict[str, str]:
        root = os.path.join(self.device_root, self.device_path.lstrip("/"))
        with self._lock:
            return {
                os.path.normpath(os.path.join(root, dev.id)): dev.id for dev in self.devs
            }

    def initial_health_check(self) -> list[str]:
        """Mark healthy every vGPU whose device already exists; return their IDs."""
        marked: list[str] = []
        for path, dev_id in self._monitored_paths().items():
            if os.path.exists(path):
                logger.info(
                    "marking devID %s healthy for plugin %s", dev_id, self.resource_name
                )
                self.mark_vgpu_device_as_healthy(dev_id)
                marked.append(dev_id)
        return marked

    def handle_fs_event(self, path: str, op: str) -> bool:
        """React to a filesystem event; return True when watching should end."""
        logger.info("got event for device %s in plugin %s", path, self.resource_name)
        dev_id = self._monitored_paths().get(os.path.normpath(path))
        if dev_id is not None:
            if op == OP_CREATE:
                logger.debug("monitored device %s appeared", self.resource_name)
                self.mark_vgpu_device_as_healthy(dev_id)
            elif op in (OP_REMOVE, OP_RENAME):
                logger.debug("monitored device %s disappeared", self.resource_name)
                self.mark_vgpu_device_as_unhealthy(dev_id)
            return False
        if path == self.socket_path and op == OP_REMOVE:
            logger.info(
                "device socket file for device %s was removed, kubelet probably restarted.",
                self.resource_name,
            )
            return True
        return False

    def _poll_health(self) -> None:
        self.initial_health_check()
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
        with self._lock:
            self.initialized = True
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

    def stop(self) -> None:
        """Stop serving, give watchers time to deregister and remove the socket."""
        self._done.set()
        self._deregistered.wait(self._deregister_timeout)
        with self._lock:
            self.initialized = False
        try:
            os.remove(self.socket_path)
        except FileNotFoundError:
            pass