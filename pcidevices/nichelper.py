"""Selection of SR-IOV capable network interfaces on a node."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from pcidevices import sriov

logger = logging.getLogger(__name__)

MATCHED_NODES_ANNOTATION = "network.harvesterhci.io/matched-nodes"
INTERFACE_ANNOTATION = "sriov.devices.harvesterhi.io/interface-name"
DEFAULT_DEVICE_PATH = "/sys/bus/pci/devices"
TOTAL_VF_FILE = "sriov_totalvfs"
CONFIGURED_VF_FILE = "sriov_numvfs"


@dataclass
class Nic:
    """A network interface as seen on the host."""

    name: str
    pci_address: str | None = None
    is_virtual: bool = False


@dataclass
class VlanConfig:
    """A VLAN configuration and the uplink NICs it uses."""

    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    nics: list[str] = field(default_factory=list)
    cluster_network: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)


@dataclass
class SRIOVNetworkDevice:
    """An SR-IOV capable NIC on a node, ready to be published."""

    name: str
    address: str
    node_name: str
    num_vfs: int = 0
    annotations: dict[str, str] = field(default_factory=dict)


def current_node_matches_selector(node_name: str, managed_nodes: str) -> bool:
    """Tell whether node_name is in the JSON list of matched node names."""
    try:
        node_names = json.loads(managed_nodes)
    except json.JSONDecodeError as exc:
        raise ValueError(f"error unmarshalling matched-nodes: {exc}") from exc
    if node_names is None:
        return False
    if not isinstance(node_names, list) or not all(
        isinstance(name, str) for name in node_names
    ):
        raise ValueError(
            f"error unmarshalling matched-nodes: not a list of names: {managed_nodes}"
        )
    return node_name in node_names


def identify_cluster_networks(
    node_name: str, vlan_configs: Iterable[VlanConfig]
) -> list[str]:
    """Return the uplink NICs of every VLAN config that covers the node."""
    nics: list[str] = []
    for config in vlan_configs:
        managed_nodes = config.annotations.get(MATCHED_NODES_ANNOTATION)
        if managed_nodes is None:
            continue
        try:
            matched = current_node_matches_selector(node_name, managed_nodes)
        except ValueError as exc:
            raise ValueError(f"error evaluating nodes from selector: {exc}") from exc
        if matched:
            nics.extend(config.nics)
    return nics


class NicSysfs:
    """SR-IOV operations on NICs below a PCI device directory."""

    def __init__(self, device_path: str = DEFAULT_DEVICE_PATH) -> None:
        self.device_path = device_path

    def _path(self, device_addr: str, *parts: str) -> str:
        return os.path.join(self.device_path, device_addr, *parts)

    def is_nic_sriov_capable(self, device_addr: str) -> bool:
        """Tell whether the NIC exposes sriov_totalvfs."""
        try:
            os.stat(self._path(device_addr, TOTAL_VF_FILE))
        except FileNotFoundError:
            return False
        return True

    def current_vf_configured(self, device_addr: str) -> int:
        """Return the number of VFs configured on the NIC."""
        return sriov.current_vf_configured(self._path(device_addr))

    def configure_vf(self, device_addr: str, numvfs: int) -> None:
        """Write the wanted number of VFs to the NIC's sriov_numvfs."""
        path = self._path(device_addr, CONFIGURED_VF_FILE)
        try:
            fd = os.open(path, os.O_WRONLY)
        except OSError as exc:
            raise OSError(
                f"error opening sriov_numvfs for device {device_addr}: {exc}"
            ) from exc
        try:
            os.write(fd, str(numvfs).encode())
        except OSError as exc:
            raise OSError(
                f"error writing to sriov_numvfs for device {device_addr}: {exc}"
            ) from exc
        finally:
            os.close(fd)

    def get_vf_list(self, pf: str) -> list[str]:
        """Return the PCI addresses of the VFs of a physical function."""
        return sriov.get_vf_list(self._path(pf))

    def list_nics_in_use_by_sriov(self, nics: Iterable[Nic]) -> list[str]:
        """Return names of physical NICs that already have VFs configured."""
        in_use: list[str] = []
        for nic in nics:
            if nic.is_virtual or nic.pci_address is None:
                continue
            if not self.is_nic_sriov_capable(nic.pci_address):
                continue
            if self.current_vf_configured(nic.pci_address) > 0:
                in_use.append(nic.name)
        return in_use

    def generate_sriov_device_objects(
        self,
        node_name: str,
        nics: Iterable[Nic],
        skip_nics: Sequence[str] | None,
    ) -> list[SRIOVNetworkDevice]:
        """Build device objects for SR-IOV capable NICs not in skip_nics."""
        skip = set(skip_nics or ())
        devices: list[SRIOVNetworkDevice] = []
        for nic in nics:
            logger.debug("found device %s on node %s: %s", nic.name, node_name, nic)
            if nic.name in skip or nic.is_virtual or nic.pci_address is None:
                continue
            try:
                capable = self.is_nic_sriov_capable(nic.pci_address)
            except OSError as exc:
                raise OSError(
                    f"error checking if device {nic.name} is sriov capable: {exc}"
                ) from exc
            if capable:
                devices.append(
                    SRIOVNetworkDevice(
                        name=f"{node_name}-{nic.name}",
                        address=nic.pci_address,
                        node_name=node_name,
                        num_vfs=0,
                        annotations={INTERFACE_ANNOTATION: nic.name},
                    )
                )
        return devices