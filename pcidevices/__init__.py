"""Discovery of PCI, USB, SR-IOV and vGPU host devices from sysfs."""

__version__ = "0.1.0"