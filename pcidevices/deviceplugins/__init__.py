"""Device lists, health tracking and allocation for PCI, USB and vGPU plugins."""