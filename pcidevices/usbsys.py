"""Discovery of USB devices from the sysfs device tree."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import stat
from collections.abc import Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_DECIMAL = re.compile(r"[+-]?[0-9]+")
_HEXADECIMAL = re.compile(r"[+-]?[0-9a-fA-F]+")


@dataclass
class USBDevice:
    """A USB device as described by its sysfs uevent file."""

    name: str = ""
    manufacturer: str = ""
    vendor: int = 0
    product: int = 0
    bcd: int = 0
    bus: int = 0
    device_number: int = 0
    serial: str = ""
    device_path: str = ""
    pci_address: str = ""

    def get_id(self) -> str:
        """Return an identifier of the form vvvv:pppp-bb:dd."""
        return (
            f"{self.vendor:04x}:{self.product:04x}-"
            f"{self.bus:02d}:{self.device_number:02d}"
        )


def _parse_int32(value: str, base: int) -> int:
    pattern = _DECIMAL if base == 10 else _HEXADECIMAL
    if not pattern.fullmatch(value):
        raise ValueError(f"invalid integer {value!r}")
    number = int(value, base)
    if not -(2**31) <= number < 2**31:
        raise ValueError(f"integer {value!r} out of range")
    return number


def parse_sys_uevent_key_value(key: str, value: str, device: USBDevice) -> None:
    """Apply one uevent key=value pair to the device; raise ValueError if malformed."""
    if key == "BUSNUM":
        try:
            device.bus = _parse_int32(value, 10)
        except ValueError as exc:
            raise ValueError(f"unable to parse BUSNUM {value}") from exc
    elif key == "DEVNUM":
        try:
            device.device_number = _parse_int32(value, 10)
        except ValueError as exc:
            raise ValueError(f"unable to parse DEVNUM {value}") from exc
    elif key == "PRODUCT":
        products = value.split("/")
        if len(products) != 3:
            raise ValueError(f"PRODUCT value {value} is not in the format of xx/xx/xx")
        parsed = []
        for index, part in enumerate(products):
            try:
                parsed.append(_parse_int32(part, 16))
            except ValueError as exc:
                raise ValueError(f"unable to parse PRODUCT[{index}] {value}") from exc
        device.vendor, device.product, device.bcd = parsed
    elif key == "DEVNAME":
        device.device_path = posixpath.normpath("/dev/" + value)
    else:
        logger.info("Skipping unknown key=value %s=%s", key, value)


def parse_sys_uevent_file(path: str) -> USBDevice | None:
    """Build a USBDevice from a sysfs device link; None if it cannot be read."""
    try:
        link = os.readlink(path)
    except OSError:
        return None

    uevent = os.path.join(path, "uevent")
    try:
        handle = open(uevent, encoding="utf-8", errors="replace")
    except OSError:
        logger.info("Unable to access %s", uevent)
        return None

    device = USBDevice(pci_address=parse_usb_symlink_to_pci_address(link))
    with handle:
        for raw in handle:
            line = raw.rstrip("\n").removesuffix("\r")
            values = line.split("=")
            if len(values) != 2:
                logger.info("Skipping %s due not being key=value", line)
                continue
            key, value = values
            try:
                parse_sys_uevent_key_value(key, value, device)
            except ValueError as exc:
                logger.error("%s", exc)
                return None
    return device


def _walk(path: str) -> Iterator[str]:
    """Yield path and everything below it in lexical order, not following links."""
    info = os.lstat(path)
    yield path
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name))


def walk_usb_devices(root: str) -> dict[int, list[USBDevice]]:
    """Find USB devices below root, grouped by vendor ID."""
    devices: dict[int, list[USBDevice]] = {}
    for path in _walk(root):
        if os.path.basename(path.rstrip("/") or "/").startswith("usb"):
            continue
        if not os.path.exists(os.path.join(path, "idVendor")):
            continue
        device = parse_sys_uevent_file(path)
        if device is not None:
            devices.setdefault(device.vendor, []).append(device)
    return devices


def parse_usb_symlink_to_pci_address(link: str) -> str:
    """Return the PCI address of the controller a USB device link points through."""
    paths = link.split("/usb")
    if len(paths) < 2:
        return ""
    return paths[0].split("/")[-1]