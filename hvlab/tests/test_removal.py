"""Tests for lab teardown."""

from pathlib import Path

import pytest

from hvlab.removal import RemovalOrchestrator
from hvlab.runs import DeploymentRun
from hvlab.schemas import LabTopology, NetworkConfig, RunKind, RunOutcome, VMSpec
from hvlab.store import TopologyStore
from hvlab.tests.conftest import FakeProvider, write_disk


@pytest.fixture
def store(lab_dirs):
    return TopologyStore(lab_dirs["config"], legacy_dir="")


@pytest.fixture
def saved_topology(store, topology):
    store.save(topology)
    return topology


def make_orchestrator(provider, store, lab_dirs):
    return RemovalOrchestrator(provider, store, vm_path=lab_dirs["vms"], stop_grace=0)


@pytest.mark.asyncio
async def test_full_teardown(saved_topology, store, lab_dirs):
    provider = FakeProvider(vms=["DC01", "WS01"], switches=["TestSwitch"])
    disks = [write_disk(lab_dirs["vms"], name, 1) for name in ("DC01", "WS01")]
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert result.success
    assert run.outcome == RunOutcome.SUCCESS
    assert run.percent == 100
    assert provider.vms == {}
    assert result.switches_removed == ["TestSwitch"]
    assert not any(d.parent.exists() for d in disks)
    assert result.definition_deleted
    assert not Path(saved_topology.path).exists()


@pytest.mark.asyncio
async def test_definition_deleted_only_after_teardown(saved_topology, store, lab_dirs):
    definition = Path(saved_topology.path)
    seen = []

    class WatchingProvider(FakeProvider):
        async def remove_vm(self, name, delete_disks=True):
            seen.append(definition.exists())
            return await super().remove_vm(name, delete_disks)

    run = DeploymentRun(RunKind.REMOVE, saved_topology)
    await make_orchestrator(WatchingProvider(vms=["DC01", "WS01"]), store, lab_dirs).remove(run)

    assert seen == [True, True]
    assert not definition.exists()


@pytest.mark.asyncio
async def test_graceful_stop_falls_back_to_turn_off(saved_topology, store, lab_dirs):
    provider = FakeProvider(vms=["DC01", "WS01"])
    provider.fail_graceful_stop.add("DC01")
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert result.success
    assert ("stop_vm", "DC01", False) in provider.calls
    assert ("stop_vm", "DC01", True) in provider.calls
    assert ("stop_vm", "WS01", True) not in provider.calls


@pytest.mark.asyncio
async def test_failure_is_recorded_and_loop_continues(saved_topology, store, lab_dirs):
    provider = FakeProvider(vms=["DC01", "WS01"])
    provider.fail_remove.add("DC01")
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert not result.success
    assert run.outcome == RunOutcome.FAILED
    assert [v.success for v in result.vms] == [False, True]
    assert "VM is locked" in result.vms[0].error
    assert "ws01" not in provider.vms
    # Definition goes once every machine has been attempted
    assert result.definition_deleted
    assert not Path(saved_topology.path).exists()


@pytest.mark.asyncio
async def test_missing_vms_are_skipped(saved_topology, store, lab_dirs):
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(FakeProvider(), store, lab_dirs).remove(run)

    assert result.success
    assert [v.found for v in result.vms] == [False, False]
    assert any("not found, skipping" in e.message for e in run.events)


@pytest.mark.asyncio
async def test_shared_switch_is_kept(saved_topology, store, lab_dirs):
    store.save(LabTopology(
        name="OtherLab",
        network=NetworkConfig(switch_name="testswitch"),
        machines=[VMSpec(name="APP01")],
    ))
    provider = FakeProvider(vms=["DC01", "WS01"], switches=["TestSwitch"])
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert result.success
    assert result.switches_removed == []
    assert "TestSwitch" in provider.switches
    assert any("still used by OtherLab" in e.message for e in run.events)


@pytest.mark.asyncio
async def test_cancel_between_machines_keeps_definition(saved_topology, store, lab_dirs):
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    class CancellingProvider(FakeProvider):
        async def remove_vm(self, name, delete_disks=True):
            run.cancel("Operator cancelled")
            return await super().remove_vm(name, delete_disks)

    provider = CancellingProvider(vms=["DC01", "WS01"])

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert result.cancelled
    assert run.outcome == RunOutcome.CANCELLED
    assert [v.name for v in result.vms] == ["DC01"]
    assert "ws01" in provider.vms
    assert Path(saved_topology.path).exists()


@pytest.mark.asyncio
async def test_invalid_definition_is_rejected(store, lab_dirs):
    topology = LabTopology(name="Broken", machines=[VMSpec(name="bad name!")])
    provider = FakeProvider(vms=["bad name!"])
    run = DeploymentRun(RunKind.REMOVE, topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert run.outcome == RunOutcome.FAILED
    assert "Invalid configuration for removal" in run.events[-1].message
    assert provider.calls == []
    assert result.vms == []


@pytest.mark.asyncio
async def test_switch_query_timeout_does_not_abort_removal(saved_topology, store, lab_dirs):
    class SlowSwitchProvider(FakeProvider):
        async def switch_exists(self, name):
            raise TimeoutError("Hyper-V command timed out after 120s")

    provider = SlowSwitchProvider(vms=["DC01", "WS01"], switches=["TestSwitch"])
    run = DeploymentRun(RunKind.REMOVE, saved_topology)

    result = await make_orchestrator(provider, store, lab_dirs).remove(run)

    assert provider.vms == {}
    assert [v.success for v in result.vms] == [True, True]
    assert any("TestSwitch" in e and "timed out" in e for e in result.errors)
    assert run.outcome == RunOutcome.FAILED
    assert run.events[-1].message == "Removal finished with errors"
    assert result.definition_deleted
    assert not Path(saved_topology.path).exists()
