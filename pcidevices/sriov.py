"""SR-IOV queries against a PCI device's sysfs directory."""

from __future__ import annotations

import glob
import os
import re
import stat

CONFIGURED_VF_FILE = "sriov_numvfs"
VF_CHECK_FILE = "sriov_vf_device"

_INTEGER = re.compile(r"[+-]?[0-9]+")


def is_device_sriov_capable(device_path: str) -> bool:
    """Tell whether the device reports a non-zero sriov_vf_device file."""
    check_path = os.path.join(device_path, VF_CHECK_FILE)
    try:
        with open(check_path, encoding="utf-8") as handle:
            contents = handle.read()
    except FileNotFoundError:
        return False
    return contents.removesuffix("\n") != "0"


def current_vf_configured(device_path: str) -> int:
    """Return the number of virtual functions configured on the device."""
    path = os.path.join(device_path, CONFIGURED_VF_FILE)
    try:
        with open(path, encoding="utf-8") as handle:
            contents = handle.read()
    except OSError as exc:
        raise OSError(
            f"error reading {CONFIGURED_VF_FILE} for device {device_path}: {exc}"
        ) from exc

    numvfs = contents.strip("\n")
    if not _INTEGER.fullmatch(numvfs):
        raise ValueError(f"invalid number of VFs {numvfs!r} for device {device_path}")
    return int(numvfs)


def get_vf_list(pf_dir: str) -> list[str]:
    """Return the PCI addresses of all virtual functions of a physical function."""
    try:
        os.lstat(pf_dir)
    except OSError as exc:
        raise OSError(
            f"error: could not get PF directory information for device: {pf_dir}, Err: {exc}"
        ) from exc

    vf_list: list[str] = []
    for vf_dir in sorted(glob.glob(os.path.join(glob.escape(pf_dir), "virtfn*"))):
        try:
            info = os.lstat(vf_dir)
            if not stat.S_ISLNK(info.st_mode):
                continue
            resolved = os.path.realpath(vf_dir, strict=True)
        except OSError:
            continue
        vf_list.append(os.path.basename(resolved))
    return vf_list