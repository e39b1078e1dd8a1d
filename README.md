# pcidevices

Helpers for finding host devices that can be handed to virtual machines,
and for keeping the device lists, health and allocation answers that a
device plugin reports for them. Everything is read from, or written to,
the Linux sysfs tree; paths can be pointed at a fake tree for testing.

The package has no third-party dependencies.

## Modules

- `pcidevices.usbtypes` — `DeviceDesc` and `InterfaceSetting`, the
  descriptor fields used to describe and classify USB devices.
- `pcidevices.usbid` — `Parser().parse_ids(stream)` reads `usb.ids`
  formatted lines into two dicts: vendors (`Vendor`, with `Product`s) and
  classes (`UsbClass`, with `SubClass`es). `describe`,
  `describe_with_vendor_and_product` and `classify` turn descriptors into
  readable text using those dicts. Malformed input raises `ValueError`.
- `pcidevices.usbsys` — `walk_usb_devices(root)` finds USB devices below a
  directory such as `/sys/bus/usb/devices` and groups them by vendor ID;
  `parse_sys_uevent_file` and `parse_sys_uevent_key_value` read one
  device's `uevent`; `parse_usb_symlink_to_pci_address` gives the PCI
  address of the controller a device hangs from. `USBDevice.get_id()`
  returns `vvvv:pppp-bb:dd`.
- `pcidevices.iommu` — `group_paths(root)` lists every
  `GROUP/devices/DEVICE` path below `/sys/kernel/iommu_groups` (or another
  root); `group_map_for_pci_devices` maps PCI addresses to group numbers.
- `pcidevices.sriov` — `is_device_sriov_capable`, `current_vf_configured`
  and `get_vf_list` for a PCI device directory.
- `pcidevices.nichelper` — `identify_cluster_networks(node_name,
  vlan_configs)` returns the uplink NICs of the `VlanConfig`s whose
  matched-nodes annotation names the node. `NicSysfs(device_path)` checks
  SR-IOV capability of NICs, reads and writes `sriov_numvfs`, lists VFs,
  finds NICs already using VFs, and builds `SRIOVNetworkDevice` objects for
  capable `Nic`s not in a skip list.
- `pcidevices.gpuhelper` — `fetch_vgpu_status` reports the configured vGPU
  (`VGPUDeviceStatus`) of a virtual function and the vGPU types with a free
  instance (`fetch_available_types`); `eval_phys_fn` resolves a VF's
  physical function; `generate_device_name` turns a vGPU type name into an
  `nvidia.com/...` resource name.
- `pcidevices.executor` — `LocalExecutor` runs commands from the host
  filesystem mounted under `/host`; `check_ready()` checks for
  `sriov-manage`. A failing command raises `subprocess.CalledProcessError`.
- `pcidevices.deviceplugins.common` — the shared types (`Device`, `Health`,
  `DeviceSpec`, `AllocateRequest`, `AllocateResponse`, ...),
  `DeviceUtilsHandler` for reading a PCI device's IOMMU group, driver, NUMA
  node and PCI ID, and `socket_path`, `resource_name_to_env_var` and
  `format_vfio_device_specs`.
- `pcidevices.deviceplugins.pci` — `PCIDevicePlugin` for whole PCI devices
  passed through VFIO, with `find` and `create`.
- `pcidevices.deviceplugins.usb` — `USBDevicePlugin` for one USB device,
  created with `new_usb_device_plugin`.
- `pcidevices.deviceplugins.vgpu` — `VGPUDevicePlugin` for the vGPUs of one
  type.

Each plugin's `list_and_watch()` is a generator: it yields the current
device list, then a new list on every health change, and an empty list once
the plugin is stopped. Device presence is watched by polling the
filesystem in a background thread.

## Installing

    pip install .

To run the tests:

    pip install ".[test]"
    pytest

## Examples

Map PCI addresses to IOMMU groups:

    from pcidevices.iommu import group_map_for_pci_devices, group_paths

    groups = group_map_for_pci_devices(group_paths("/sys/kernel/iommu_groups"))

Describe a USB device from a `usb.ids` file:

    from pcidevices.usbid import Parser, describe_with_vendor_and_product

    with open("usb.ids", encoding="utf-8") as stream:
        vendors, classes = Parser().parse_ids(stream)
    print(describe_with_vendor_and_product(0x0951, 0x1666, vendors))

Answer an allocation request for PCI devices:

    from pcidevices.deviceplugins.common import AllocateRequest, ContainerAllocateRequest
    from pcidevices.deviceplugins.pci import PCIDevice, PCIDevicePlugin

    plugin = PCIDevicePlugin(
        [PCIDevice(pci_id="0000:04:00.0", pci_address="0000:04:00.0", iommu_group="45")],
        "example.com/nic",
    )
    response = plugin.allocate(
        AllocateRequest([ContainerAllocateRequest(["0000:04:00.0"])])
    )
    # response.container_responses[0].envs has PCI_RESOURCE_EXAMPLE_COM_NIC,
    # and .devices holds /dev/vfio/vfio and /dev/vfio/45.

Turn a vGPU type name into a resource name:

    from pcidevices.gpuhelper import generate_device_name

    generate_device_name("NVIDIA A2-4C")  # "nvidia.com/NVIDIA_A2-4C"

## What it does not do

- It ships no `usb.ids` data; the caller supplies a listing to `Parser`.
- The device plugins keep state and answer allocation requests as Python
  objects. They do not serve the kubelet device plugin gRPC API, do not
  register with the kubelet, and do not talk to a Kubernetes API server.
- It does not enumerate NVIDIA GPUs, nor find management or bonded NICs
  from the host's network namespace; the caller passes in `Nic` and
  `VlanConfig` lists.
- There is no command-line program.