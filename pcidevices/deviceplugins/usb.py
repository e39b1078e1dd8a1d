"""Device plugin that exposes a single USB device to containers."""

from __future__ import annotations

import logging
import os
import queue
import re
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from pcidevices.deviceplugins.common import (
    HOST_ROOT_MOUNT,
    AllocateRequest,
    AllocateResponse,
    ContainerAllocateResponse,
    Device,
    DeviceSpec,
    Health,
    resource_name_to_env_var,
    socket_path,
)

logger = logging.getLogger(__name__)

USB_RESOURCE_PREFIX = "USB_RESOURCE"
NON_ROOT_UID = 107
RETRY_INTERVAL = 5.0
POLL_INTERVAL = 1.0

OP_CREATE = "create"
OP_WRITE = "write"
OP_REMOVE = "remove"
OP_RENAME = "rename"
OP_CHMOD = "chmod"

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class PluginDevice:
    """The USB device a plugin serves."""

    id: str
    device_path: str
    bus: int
    device_number: int
    is_healthy: bool = True

    def to_device(self) -> Device:
        """Return the device as advertised to the kubelet."""
        health = Health.HEALTHY if self.is_healthy else Health.UNHEALTHY
        return Device(id=self.id, health=health, numa_nodes=None)


def generate_bus_and_device(device_path: str) -> tuple[int, int]:
    """Return the bus and device numbers from a path ending in BUS/DEVICE."""
    parts = device_path.split("/")
    if len(parts) < 2:
        raise ValueError(f"device path {device_path!r} has no bus and device number")
    bus_str, device_str = parts[-2], parts[-1]
    if not _INTEGER.fullmatch(bus_str):
        logger.error("failed to convert busStr %s", bus_str)
        raise ValueError(f"invalid bus number {bus_str!r}")
    if not _INTEGER.fullmatch(device_str):
        logger.error("failed to convert deviceNumberStr %s", device_str)
        raise ValueError(f"invalid device number {device_str!r}")
    return int(bus_str), int(device_str)


def _chown_non_root(path: str) -> None:
    os.chown(path, NON_ROOT_UID, NON_ROOT_UID, follow_symlinks=False)


class USBDevicePlugin:
    """Advertises one USB device and hands it to containers on request."""

    def __init__(
        self,
        resource_name: str,
        device: PluginDevice | None,
        socket: str,
        host_root: str = HOST_ROOT_MOUNT,
        chown: Callable[[str], None] = _chown_non_root,
        poll_interval: float = POLL_INTERVAL,
        retry_interval: float = RETRY_INTERVAL,
    ) -> None:
        self.resource_name = resource_name
        self.device = device
        self.socket_path = socket
        self.host_root = host_root
        self._chown = chown
        self._poll_interval = poll_interval
        self._retry_interval = retry_interval
        self._lock = threading.Lock()
        self._updates: queue.Queue[None] = queue.Queue()
        self._stop = threading.Event()
        self._deregistered = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = False

    def device_name(self) -> str:
        """Return the resource name the plugin registers."""
        return self.resource_name

    def devices(self) -> list[Device]:
        """Return the current list of advertised devices."""
        if self.device is None:
            return []
        return [self.device.to_device()]

    def set_device_health(self, is_healthy: bool) -> None:
        """Record the device's health and signal watchers when it changes."""
        if self.device is None:
            return
        with self._lock:
            changed = self.device.is_healthy != is_healthy
            self.device.is_healthy = is_healthy
        if changed:
            self._updates.put(None)

    def _monitored_path(self) -> str:
        assert self.device is not None
        return os.path.normpath(
            os.path.join(self.host_root, self.device.device_path.lstrip("/"))
        )

    def handle_fs_event(self, path: str, op: str) -> bool:
        """React to a filesystem event; return True when watching should end."""
        logger.debug("health Event: %s %s", op, path)
        if self.device is not None and os.path.normpath(path) == self._monitored_path():
            if op == OP_CREATE:
                logger.info("monitored device %s appeared", self.resource_name)
                self.set_device_health(True)
            elif op in (OP_REMOVE, OP_RENAME):
                logger.info("monitored device %s disappeared", self.resource_name)
                self.set_device_health(False)
            return False
        if path == self.socket_path and op == OP_REMOVE:
            logger.info(
                "device socket file for device %s was removed, kubelet probably restarted.",
                self.resource_name,
            )
            return True
        return False

    def _resolve_under_root(self, device_path: str) -> str:
        root = os.path.realpath(self.host_root)
        candidate = os.path.realpath(
            os.path.join(root, device_path.lstrip("/")), strict=True
        )
        if os.path.commonpath([root, candidate]) != root:
            raise OSError(f"{device_path} resolves outside of {self.host_root}")
        return candidate

    def allocate(self, request: AllocateRequest) -> AllocateResponse:
        """Grant the requested device to each container."""
        response = AllocateResponse()
        env: dict[str, str] = {}
        key = resource_name_to_env_var(USB_RESOURCE_PREFIX, self.resource_name)
        for container_request in request.container_requests:
            container_response = ContainerAllocateResponse()
            for dev_id in container_request.devices_ids:
                logger.debug("usb device id: %s", dev_id)
                device = self.device
                if device is None:
                    logger.debug("usb disappeared: %s", dev_id)
                    continue
                try:
                    resolved = self._resolve_under_root(device.device_path)
                except OSError as exc:
                    raise OSError(
                        f"error opening the socket {device.device_path}: {exc}"
                    ) from exc
                try:
                    self._chown(resolved)
                except OSError as exc:
                    raise OSError(
                        f"error setting the permission the socket {device.device_path}: {exc}"
                    ) from exc

                value = f"{device.bus}:{device.device_number}"
                env[key] = f"{env[key]},{value}" if key in env else value
                container_response.envs = env
                container_response.devices.append(
                    DeviceSpec(
                        container_path=device.device_path,
                        host_path=device.device_path,
                    )
                )
            response.container_responses.append(container_response)
        return response

    def list_and_watch(self) -> Iterator[list[Device]]:
        """Yield the device list now and on every change, then an empty list on stop."""
        self._deregistered.clear()
        yield self.devices()
        while not self._stop.is_set():
            try:
                self._updates.get(timeout=0.05)
            except queue.Empty:
                continue
            yield self.devices()
        yield []
        self._deregistered.set()

    def _health_check(self, stop: threading.Event) -> None:
        if self.device is None:
            raise OSError("no device to monitor")
        device_path = self._monitored_path()
        parent = os.path.dirname(device_path)
        if not os.path.isdir(parent):
            raise OSError(f"failed to watch device {device_path} parent directory")
        if not os.path.exists(device_path):
            raise OSError(f"failed to validate device {device_path}")
        socket_dir = os.path.dirname(self.socket_path)
        if not os.path.isdir(socket_dir):
            raise OSError("failed to add the device-plugin kubelet path to the watcher")

        device_present = True
        socket_watched = os.path.exists(self.socket_path)
        while not stop.wait(self._poll_interval):
            present = os.path.exists(device_path)
            if present != device_present:
                device_present = present
                self.handle_fs_event(device_path, OP_CREATE if present else OP_REMOVE)
            if socket_watched and not os.path.exists(self.socket_path):
                if self.handle_fs_event(self.socket_path, OP_REMOVE):
                    return

    def _run(self, stop: threading.Event) -> None:
        while True:
            try:
                logger.info("%s device plugin started", self.resource_name)
                self._health_check(stop)
            except OSError as exc:
                logger.error("Error starting %s device plugin: %s", self.resource_name, exc)
            if stop.wait(self._retry_interval):
                return

    def start(self) -> None:
        """Start monitoring the device in the background; no-op if running."""
        if self._started:
            return
        self._stop = threading.Event()
        self._started = True
        self._thread = threading.Thread(
            target=self._run, args=(self._stop,), daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop monitoring the device; no-op if not running."""
        if not self._started:
            return
        self._stop.set()
        self._started = False

    def is_started(self) -> bool:
        """Tell whether the plugin is running."""
        return self._started


def new_usb_device_plugin(
    name: str, resource_name: str, device_path: str
) -> USBDevicePlugin:
    """Create a plugin for the USB device at device_path."""
    parts = resource_name.split("/")
    resource_id = parts[1] if len(parts) > 1 else parts[0]
    bus, device_number = generate_bus_and_device(device_path)
    resource_id = f"usb-{resource_id}"
    return USBDevicePlugin(
        resource_name=resource_name,
        device=PluginDevice(
            id=name,
            device_path=device_path,
            bus=bus,
            device_number=device_number,
            is_healthy=True,
        ),
        socket=socket_path(resource_id),
    )