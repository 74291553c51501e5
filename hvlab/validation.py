"""Topology validation.

Topology values end up as arguments of PowerShell invocations and as path
components under the lab root. This module is the only gate between operator
input and those sinks, so its patterns must stay strict.
"""

from __future__ import annotations

import ipaddress
import re
from typing import TYPE_CHECKING

from hvlab.errors import ValidationError

if TYPE_CHECKING:
    from hvlab.schemas import LabTopology, VMSpec

LAB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_ \-]+$")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

MAX_VM_NAME_LENGTH = 15  # NetBIOS computer name limit
MIN_VLAN_ID = 1
MAX_VLAN_ID = 4094

RESERVED_DEVICE_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)


def is_valid_lab_name(name: str | None) -> bool:
    return bool(name) and LAB_NAME_PATTERN.fullmatch(name) is not None


def is_valid_identifier(value: str | None) -> bool:
    """Switch and VM names: letters, digits, '-' and '_' only."""
    return bool(value) and IDENTIFIER_PATTERN.fullmatch(value) is not None


def validate_vm_name(name: str, field: str = "name") -> ValidationError | None:
    """Validate a single VM name."""
    if not is_valid_identifier(name):
        return ValidationError(field, name, "Invalid VM name")
    if name.upper() in RESERVED_DEVICE_NAMES:
        return ValidationError(field, name, "VM name cannot be a reserved device name")
    if len(name) > MAX_VM_NAME_LENGTH:
        return ValidationError(
            field, name, f"VM name too long (max {MAX_VM_NAME_LENGTH} characters)"
        )
    return None


def _is_ipv4_address(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def _is_ipv4_network(value: str) -> bool:
    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError:
        return False
    return True


def _is_subnet_mask(value: str) -> bool:
    """Dotted mask ("255.255.255.0") or prefix length ("24")."""
    return _is_ipv4_network(f"0.0.0.0/{value}")


def validate_network(topology: LabTopology) -> ValidationError | None:
    """Lab-wide address prefix and VLAN."""
    network = topology.network
    if network.address_prefix and not _is_ipv4_network(network.address_prefix):
        return ValidationError(
            "network.addressPrefix", network.address_prefix, "Invalid IPv4 address prefix"
        )
    if network.vlan_id is not None and not MIN_VLAN_ID <= network.vlan_id <= MAX_VLAN_ID:
        return ValidationError(
            "network.vlanId", network.vlan_id, f"VLAN ID must be {MIN_VLAN_ID}-{MAX_VLAN_ID}"
        )
    return None


def validate_machine_settings(vm: VMSpec, index: int) -> ValidationError | None:
    """Sizes and addressing of one machine."""
    prefix = f"machines[{index}]"
    for field, value in (
        ("memoryGB", vm.memory_gb),
        ("processors", vm.processors),
        ("diskSizeGB", vm.disk_size_gb),
    ):
        if value <= 0:
            return ValidationError(f"{prefix}.{field}", value, "Must be greater than zero")

    if vm.ip_address and not _is_ipv4_address(vm.ip_address):
        return ValidationError(f"{prefix}.ipAddress", vm.ip_address, "Invalid IPv4 address")
    if vm.subnet_mask and not _is_subnet_mask(vm.subnet_mask):
        return ValidationError(f"{prefix}.subnetMask", vm.subnet_mask, "Invalid subnet mask")
    if vm.gateway and not _is_ipv4_address(vm.gateway):
        return ValidationError(f"{prefix}.gateway", vm.gateway, "Invalid IPv4 address")
    for dns_index, server in enumerate(vm.dns_servers or []):
        if not _is_ipv4_address(server):
            return ValidationError(
                f"{prefix}.dnsServers[{dns_index}]", server, "Invalid IPv4 address"
            )
    return None


def validate_topology(topology: LabTopology) -> ValidationError | None:
    """Validate a topology, returning the first violation found.

    Order: lab name, switch name, then per machine its name pattern,
    reserved name, length, optional switch override, and uniqueness.
    Network settings and per-machine sizes and addresses are checked after
    every name has passed.
    """
    if not is_valid_lab_name(topology.name):
        return ValidationError("name", topology.name, "Invalid lab name")

    if not is_valid_identifier(topology.network.switch_name):
        return ValidationError(
            "network.switchName", topology.network.switch_name, "Invalid switch name"
        )

    seen: set[str] = set()
    for index, vm in enumerate(topology.machines):
        error = validate_vm_name(vm.name, f"machines[{index}].name")
        if error is not None:
            return error

        if vm.switch_name and not is_valid_identifier(vm.switch_name):
            return ValidationError(
                f"machines[{index}].switchName", vm.switch_name, "Invalid switch name"
            )

        key = vm.name.upper()
        if key in seen:
            return ValidationError(f"machines[{index}].name", vm.name, "Duplicate VM name")
        seen.add(key)

    error = validate_network(topology)
    if error is not None:
        return error

    for index, vm in enumerate(topology.machines):
        error = validate_machine_settings(vm, index)
        if error is not None:
            return error

    return None


def ensure_valid(topology: LabTopology) -> None:
    """Raise ValidationError if the topology is invalid."""
    error = validate_topology(topology)
    if error is not None:
        raise error
