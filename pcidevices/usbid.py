"""Parsing of usb.ids data and human-readable device descriptions."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from pcidevices.usbtypes import DeviceDesc, InterfaceSetting

_HEX_ID = re.compile(r"[0-9a-fA-F]+")
_MAX_LINE_BYTES = 512


@dataclass
class Vendor:
    """A vendor name and its known products keyed by product ID."""

    name: str
    products: dict[int, Product] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.name


@dataclass
class Product:
    """A product name and the names of its interfaces keyed by ID."""

    name: str
    interfaces: dict[int, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.name


@dataclass
class UsbClass:
    """A class name and its subclasses keyed by subclass code."""

    name: str
    subclasses: dict[int, SubClass] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.name


@dataclass
class SubClass:
    """A subclass name and its protocols keyed by protocol code."""

    name: str
    protocols: dict[int, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.name


def _split(line: str) -> tuple[str, int, int, str]:
    pieces = line.split("  ", 1)
    if len(pieces) != 2:
        raise ValueError(f'malformatted line "{line}"')
    head, name = pieces

    stripped = head.lstrip("\t")
    level = len(head) - len(stripped)
    head = stripped

    kind = ""
    first = head.split(" ", 1)
    if len(first) == 2:
        kind, head = first

    if not _HEX_ID.fullmatch(head) or int(head, 16) > 0xFFFF:
        raise ValueError(f'malformatted id "{head}"')
    return kind, level, int(head, 16), name


class Parser:
    """Reads usb.ids formatted data into vendor and class mappings."""

    def __init__(self) -> None:
        self._vendor: Vendor | None = None
        self._product: Product | None = None
        self._class: UsbClass | None = None
        self._subclass: SubClass | None = None
        self._vendors: dict[int, Vendor] = {}
        self._classes: dict[int, UsbClass] = {}

    def _parse_vendor(self, level: int, ident: int, name: str) -> None:
        if level == 0:
            self._vendor = Vendor(name)
            self._vendors[ident] = self._vendor
        elif level == 1:
            if self._vendor is None:
                raise ValueError("product line without vendor line")
            self._product = Product(name)
            self._vendor.products[ident] = self._product
        elif level == 2:
            if self._product is None:
                raise ValueError("interface line without device line")
            self._product.interfaces[ident] = name
        else:
            raise ValueError("too many levels of nesting for vendor block")

    def _parse_class(self, level: int, ident: int, name: str) -> None:
        if level == 0:
            self._class = UsbClass(name)
            self._classes[ident] = self._class
        elif level == 1:
            if self._class is None:
                raise ValueError("subclass line without class line")
            self._subclass = SubClass(name)
            self._class.subclasses[ident] = self._subclass
        elif level == 2:
            if self._subclass is None:
                raise ValueError("protocol line without subclass line")
            self._subclass.protocols[ident] = name
        else:
            raise ValueError("too many levels of nesting for class")

    def parse_ids(
        self, stream: Iterable[str | bytes]
    ) -> tuple[dict[int, Vendor], dict[int, UsbClass]]:
        """Parse lines of usb.ids data; raise ValueError on malformed input."""
        kind = ""
        for lineno, raw in enumerate(stream):
            line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if line.endswith("\r\n"):
                line = line[:-2]
            elif line.endswith("\n"):
                line = line[:-1]
            if len(line.encode("utf-8")) >= _MAX_LINE_BYTES:
                raise ValueError(f"line {lineno}: line too long")

            if not line or line.startswith("#"):
                continue

            try:
                found_kind, level, ident, name = _split(line)
                if found_kind:
                    kind = found_kind
                if kind == "":
                    self._parse_vendor(level, ident, name)
                elif kind == "C":
                    self._parse_class(level, ident, name)
            except ValueError as exc:
                raise ValueError(f"line {lineno}: {exc}") from exc

        return self._vendors, self._classes


def describe(desc: object, vendors: Mapping[int, Vendor]) -> str:
    """Describe the vendor and product of a device as "Product (Vendor)"."""
    if not isinstance(desc, DeviceDesc):
        return f"Unknown ({type(desc).__name__})"
    vendor = vendors.get(desc.vendor)
    if vendor is None:
        return f"Unknown {desc.vendor:04x}:{desc.product:04x}"
    product = vendor.products.get(desc.product)
    if product is None:
        return f"Unknown ({vendor})"
    return f"{product} ({vendor})"


def describe_with_vendor_and_product(
    vendor: int, product: int, vendors: Mapping[int, Vendor]
) -> str:
    """Describe a device given only its vendor and product IDs."""
    return describe(DeviceDesc(vendor=vendor, product=product), vendors)


def classify(val: object, classes: Mapping[int, UsbClass]) -> str:
    """Describe the class, subclass and protocol of a device or interface."""
    if not isinstance(val, (DeviceDesc, InterfaceSetting)):
        return f"Unknown ({type(val).__name__})"
    class_code, sub, proto = val.class_code, val.subclass, val.protocol

    usb_class = classes.get(class_code)
    if usb_class is None:
        return f"Unknown {class_code}.{sub}.{proto}"
    subclass = usb_class.subclasses.get(sub)
    if subclass is None:
        return str(usb_class)
    protocol = subclass.protocols.get(proto)
    if protocol is None:
        return f"{usb_class} ({subclass})"
    return f"{usb_class} ({subclass}) {protocol}"