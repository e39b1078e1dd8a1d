import os

import pytest

from pcidevices.deviceplugins.common import (
    VFIO_DEVICE_PATH,
    AllocateRequest,
    ContainerAllocateRequest,
    Health,
    resource_name_to_env_var,
)
from pcidevices.deviceplugins.usb import OP_CREATE, OP_REMOVE
from pcidevices.deviceplugins.vgpu import (
    VGPU_PREFIX,
    VGPUDevicePlugin,
    construct_vgpu_devices,
)

RESOURCE = "nvidia.com/NVIDIA_A2-4C"


@pytest.fixture
def plugin(tmp_path):
    mdev = tmp_path / "mdev"
    mdev.mkdir()
    return VGPUDevicePlugin(
        ["uuid-a", "uuid-b"],
        RESOURCE,
        socket=str(tmp_path / "plugin.sock"),
        device_root="/",
        device_path=str(mdev),
        poll_interval=60.0,
        deregister_timeout=0.2,
    )


def test_construct_vgpu_devices_unhealthy():
    devices = construct_vgpu_devices(["x", "y"])
    assert [d.id for d in devices] == ["x", "y"]
    assert all(d.health == Health.UNHEALTHY for d in devices)


def test_count_starts_at_zero(plugin):
    assert plugin.get_count() == 0


def test_device_exists(plugin):
    assert plugin.device_exists("uuid-a")
    assert not plugin.device_exists("uuid-z")


def test_add_device_is_idempotent(plugin):
    plugin.add_device("uuid-c")
    plugin.add_device("uuid-c")
    ids = [d.id for d in plugin.devs]
    assert ids.count("uuid-c") == 1
    assert plugin.device_exists("uuid-c")


def test_remove_device_marks_unhealthy(plugin):
    plugin.devs[0].health = Health.HEALTHY
    assert plugin.get_count() == 1
    plugin.remove_device("uuid-a")
    assert plugin.get_count() == 0


def test_allocate_only_existing_devices(plugin):
    os.mkdir(os.path.join(plugin.device_path, "uuid-a"))
    request = AllocateRequest(
        [ContainerAllocateRequest(devices_ids=["uuid-a", "missing"])]
    )
    response = plugin.allocate(request)
    assert len(response.container_responses) == 1
    container = response.container_responses[0]
    key = resource_name_to_env_var(VGPU_PREFIX, RESOURCE)
    assert container.envs == {key: "uuid-a"}
    assert [spec.host_path for spec in container.devices] == [VFIO_DEVICE_PATH]
    assert container.devices[0].container_path == VFIO_DEVICE_PATH


def test_initial_health_check_marks_present(plugin):
    os.mkdir(os.path.join(plugin.device_path, "uuid-b"))
    assert plugin.initial_health_check() == ["uuid-b"]


def test_handle_fs_event_socket_removed(plugin):
    assert plugin.handle_fs_event(plugin.socket_path, OP_REMOVE) is True
    assert plugin.handle_fs_event("/elsewhere", OP_REMOVE) is False


def test_list_and_watch_reports_changes(plugin):
    stream = plugin.list_and_watch()
    first = next(stream)
    assert [d.health for d in first] == [Health.UNHEALTHY, Health.UNHEALTHY]

    path = os.path.join(plugin.device_path, "uuid-a")
    assert plugin.handle_fs_event(path, OP_CREATE) is False
    update = next(stream)
    assert {d.id: d.health for d in update}["uuid-a"] == Health.HEALTHY
    assert plugin.get_count() == 1

    plugin.stop()
    assert next(stream) == []
    assert plugin.initialized is False


def test_stop_removes_socket(plugin):
    with open(plugin.socket_path, "w"):
        pass
    stream = plugin.list_and_watch()
    assert [d.id for d in next(stream)] == ["uuid-a", "uuid-b"]
    plugin.stop()
    assert next(stream) == []
    assert plugin.initialized is False
    assert not os.path.exists(plugin.socket_path)