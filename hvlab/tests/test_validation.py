"""Tests for topology validation."""

import pytest

from hvlab.errors import ValidationError
from hvlab.schemas import LabTopology, NetworkConfig, VMSpec
from hvlab.validation import (
    ensure_valid,
    is_valid_identifier,
    is_valid_lab_name,
    validate_topology,
    validate_vm_name,
)


def make_topology(name="MyLab", switch="LabSwitch", vms=("DC01",), **kwargs) -> LabTopology:
    return LabTopology(
        name=name,
        network=NetworkConfig(switch_name=switch),
        machines=[VMSpec(name=n) for n in vms],
        **kwargs,
    )


class TestPatterns:
    @pytest.mark.parametrize("name", ["MyLab", "Lab 01", "test-lab_2"])
    def test_valid_lab_names(self, name):
        assert is_valid_lab_name(name)

    @pytest.mark.parametrize("name", ["", "lab;rm -rf", "lab'x", "lab$(whoami)", "lab/..", None])
    def test_invalid_lab_names(self, name):
        assert not is_valid_lab_name(name)

    def test_identifier_rejects_spaces(self):
        assert is_valid_identifier("Lab-Switch_1")
        assert not is_valid_identifier("Lab Switch")


class TestValidateTopology:
    def test_valid_topology_passes(self):
        assert validate_topology(make_topology(vms=("DC01", "WS01"))) is None

    def test_injection_in_lab_name_rejected(self):
        error = validate_topology(make_topology(name="lab;rm -rf"))

        assert isinstance(error, ValidationError)
        assert error.field == "name"
        assert error.value == "lab;rm -rf"

    def test_invalid_switch_name_rejected(self):
        error = validate_topology(make_topology(switch="Lab Switch"))

        assert error.field == "network.switchName"

    def test_reserved_device_name_rejected(self):
        error = validate_topology(make_topology(vms=("DC01", "COM1")))

        assert error.field == "machines[1].name"
        assert "reserved" in error.reason

    def test_reserved_name_is_case_insensitive(self):
        assert validate_vm_name("nul") is not None

    def test_vm_name_length_boundary(self):
        assert validate_topology(make_topology(vms=("A" * 15,))) is None

        error = validate_topology(make_topology(vms=("A" * 16,)))
        assert error is not None
        assert "too long" in error.reason

    def test_per_vm_switch_override_validated(self):
        topology = make_topology()
        topology.machines[0].switch_name = "bad switch"

        error = validate_topology(topology)

        assert error.field == "machines[0].switchName"

    def test_duplicate_names_rejected(self):
        error = validate_topology(make_topology(vms=("DC01", "dc01")))

        assert error.field == "machines[1].name"
        assert "Duplicate" in error.reason

    def test_first_violation_wins(self):
        # Both lab name and VM name are invalid; the lab name is reported
        error = validate_topology(make_topology(name="bad;name", vms=("bad vm",)))

        assert error.field == "name"

    def test_message_names_field_and_value(self):
        error = validate_topology(make_topology(vms=("bad vm",)))

        assert "machines[0].name" in str(error)
        assert "'bad vm'" in str(error)

    def test_ensure_valid_raises(self):
        with pytest.raises(ValidationError):
            ensure_valid(make_topology(name="x;y"))


class TestNetworkAndSizes:
    def machine(self, **kwargs) -> LabTopology:
        return LabTopology(name="MyLab", machines=[VMSpec(name="DC01", **kwargs)])

    def test_full_addressing_passes(self):
        topology = LabTopology(
            name="MyLab",
            network=NetworkConfig(address_prefix="192.168.10.0/24", vlan_id=10),
            machines=[
                VMSpec(
                    name="DC01",
                    ip_address="192.168.10.10",
                    subnet_mask="255.255.255.0",
                    gateway="192.168.10.1",
                    dns_servers=["192.168.10.10", "1.1.1.1"],
                )
            ],
        )

        assert validate_topology(topology) is None

    def test_prefix_length_accepted_as_subnet_mask(self):
        assert validate_topology(self.machine(subnet_mask="24")) is None

    def test_empty_strings_are_unset(self):
        assert validate_topology(self.machine(ip_address="", gateway="")) is None

    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"ip_address": "10.0.0.300"}, "machines[0].ipAddress"),
            ({"ip_address": "10.0.0.1; Remove-Item C:\\"}, "machines[0].ipAddress"),
            ({"subnet_mask": "255.0.255.0"}, "machines[0].subnetMask"),
            ({"gateway": "gateway"}, "machines[0].gateway"),
            ({"dns_servers": ["10.0.0.1", "dns.local"]}, "machines[0].dnsServers[1]"),
            ({"memory_gb": 0}, "machines[0].memoryGB"),
            ({"processors": -1}, "machines[0].processors"),
            ({"disk_size_gb": 0}, "machines[0].diskSizeGB"),
        ],
    )
    def test_machine_settings_rejected(self, kwargs, field):
        error = validate_topology(self.machine(**kwargs))

        assert error is not None
        assert error.field == field

    @pytest.mark.parametrize("vlan_id", [0, 4095])
    def test_vlan_out_of_range(self, vlan_id):
        topology = LabTopology(name="MyLab", network=NetworkConfig(vlan_id=vlan_id))

        assert validate_topology(topology).field == "network.vlanId"

    def test_bad_address_prefix(self):
        topology = LabTopology(name="MyLab", network=NetworkConfig(address_prefix="10.0.0.0/33"))

        assert validate_topology(topology).field == "network.addressPrefix"

    def test_names_checked_before_addresses(self):
        topology = LabTopology(
            name="MyLab",
            machines=[VMSpec(name="DC01", ip_address="bad"), VMSpec(name="bad vm")],
        )

        assert validate_topology(topology).field == "machines[1].name"
