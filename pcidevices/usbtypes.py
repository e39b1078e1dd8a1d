"""USB descriptor types used when describing and classifying devices."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class DeviceDesc:
    """The fields of a USB device descriptor that identify a device."""

    class_code: int = 0
    subclass: int = 0
    protocol: int = 0
    max_control_packet_size: int = 0
    vendor: int = 0
    product: int = 0


@dataclass
class InterfaceSetting:
    """A USB interface at one particular alternate setting."""

    number: int = 0
    alternate: int = 0
    class_code: int = 0
    subclass: int = 0
    protocol: int = 0
    interface_index: int = 0