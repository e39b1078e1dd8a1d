[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pcidevices"
version = "0.1.0"
description = "Discovery of PCI, USB, SR-IOV and vGPU devices from sysfs, and device plugin state for passing them to virtual machines"
requires-python = ">=3.10"
dependencies = []
keywords = ["pci", "usb", "sriov", "vgpu", "iommu", "sysfs", "device-plugin", "vfio", "usb.ids"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pcidevices"]

[tool.pytest.ini_options]
addopts = "-ra"
