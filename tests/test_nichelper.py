import pytest

from pcidevices.nichelper import (
    INTERFACE_ANNOTATION,
    MATCHED_NODES_ANNOTATION,
    Nic,
    NicSysfs,
    VlanConfig,
    current_node_matches_selector,
    identify_cluster_networks,
)

VLAN_CONFIG_ALL_NODES = VlanConfig(
    name="all-nodes",
    annotations={MATCHED_NODES_ANNOTATION: '["node1","node2"]'},
    nics=["eno49"],
    cluster_network="workload",
)

VLAN_CONFIG_SPECIFIC_NODES = VlanConfig(
    name="node2-match",
    annotations={MATCHED_NODES_ANNOTATION: '["node2"]'},
    nics=["eno50"],
    cluster_network="workload",
    node_selector={"kubernetes.io/hostname": "node2"},
)

FAKE_SRIOV = [
    ("0000:04:00.0", "63\n", "4"),
    ("0000:04:00.1", "63\n", "0"),
]

NICS = [
    Nic("ens4f0", "0000:04:00.0"),
    Nic("ens4f1", "0000:04:00.1"),
    Nic("eth9", "0000:05:00.0"),
    Nic("veth1", None, is_virtual=True),
]


@pytest.fixture
def sysfs(tmp_path):
    for address, total, num in FAKE_SRIOV:
        device = tmp_path / address
        device.mkdir()
        (device / "sriov_totalvfs").write_text(total)
        (device / "sriov_numvfs").write_text(num)
    (tmp_path / "0000:05:00.0").mkdir()
    return NicSysfs(str(tmp_path))


def test_match_all_nodes():
    nics = identify_cluster_networks("node1", [VLAN_CONFIG_ALL_NODES])
    assert len(nics) == 1


def test_no_match_specific_node():
    nics = identify_cluster_networks("node1", [VLAN_CONFIG_SPECIFIC_NODES])
    assert len(nics) == 0


def test_match_specific_node():
    nics = identify_cluster_networks("node2", [VLAN_CONFIG_SPECIFIC_NODES])
    assert nics == ["eno50"]


def test_config_without_annotation_skipped():
    config = VlanConfig(name="plain", nics=["eno1"])
    assert identify_cluster_networks("node1", [config]) == []


def test_bad_annotation_raises():
    config = VlanConfig(name="bad", annotations={MATCHED_NODES_ANNOTATION: "{"}, nics=["eno1"])
    with pytest.raises(ValueError, match="error evaluating nodes from selector"):
        identify_cluster_networks("node1", [config])


def test_current_node_matches_selector():
    assert current_node_matches_selector("node2", '["node1","node2"]') is True
    assert current_node_matches_selector("node3", '["node1","node2"]') is False
    assert current_node_matches_selector("node1", "null") is False


def test_current_node_matches_selector_rejects_non_list():
    with pytest.raises(ValueError, match="error unmarshalling matched-nodes"):
        current_node_matches_selector("node1", '{"a": 1}')


def test_generate_sriov_nics(sysfs):
    generated = sysfs.generate_sriov_device_objects("fake", NICS, None)
    assert len(generated) == 2
    assert [d.address for d in generated] == ["0000:04:00.0", "0000:04:00.1"]
    assert generated[0].name == "fake-ens4f0"
    assert generated[0].annotations == {INTERFACE_ANNOTATION: "ens4f0"}
    assert all(d.num_vfs == 0 and d.node_name == "fake" for d in generated)


def test_generate_sriov_nics_skips(sysfs):
    generated = sysfs.generate_sriov_device_objects("fake", NICS, ["ens4f0"])
    assert [d.name for d in generated] == ["fake-ens4f1"]


def test_configure_and_verify_vf(sysfs):
    pf_address = "0000:04:00.0"
    sysfs.configure_vf(pf_address, 4)
    assert sysfs.current_vf_configured(pf_address) == 4


def test_configure_vf_missing_device(sysfs):
    with pytest.raises(OSError, match="error opening sriov_numvfs"):
        sysfs.configure_vf("0000:09:00.0", 2)


def test_is_nic_sriov_capable(sysfs):
    assert sysfs.is_nic_sriov_capable("0000:04:00.1") is True
    assert sysfs.is_nic_sriov_capable("0000:05:00.0") is False


def test_list_nics_in_use_by_sriov(sysfs):
    assert sysfs.list_nics_in_use_by_sriov(NICS) == ["ens4f0"]


def test_get_vf_list(sysfs, tmp_path):
    vf = tmp_path / "0000:04:10.0"
    vf.mkdir()
    (tmp_path / "0000:04:00.0" / "virtfn0").symlink_to(vf)
    assert sysfs.get_vf_list("0000:04:00.0") == ["0000:04:10.0"]
    assert sysfs.get_vf_list("0000:04:00.1") == []