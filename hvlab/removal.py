"""Removal orchestrator: best-effort teardown of a deployed lab.

Machines are torn down one by one; a failure on one machine is recorded and
the loop moves on. The lab's definition file is deleted last, once every
machine has been attempted, unless the run was cancelled part way.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from hvlab.config import settings
from hvlab.errors import HypervisorError
from hvlab.providers.base import Provider
from hvlab.runs import DeploymentRun
from hvlab.schemas import DeployPhase, RunOutcome
from hvlab.store import AppSettingsStore, TopologyStore
from hvlab.validation import validate_topology

logger = logging.getLogger(__name__)


@dataclass
class VMRemoval:
    name: str
    success: bool = False
    found: bool = True
    error: str | None = None


@dataclass
class RemovalResult:
    """Aggregate teardown result."""
    lab_name: str
    vms: list[VMRemoval] = field(default_factory=list)
    switches_removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    definition_deleted: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.errors and all(v.success for v in self.vms)


class RemovalOrchestrator:
    """Tears down the VMs, disks and switch of a lab."""

    def __init__(
        self,
        provider: Provider,
        store: TopologyStore,
        app_settings: AppSettingsStore | None = None,
        vm_path: str | Path | None = None,
        stop_grace: float | None = None,
    ):
        self.provider = provider
        self.store = store
        self.app_settings = app_settings or AppSettingsStore()
        self._vm_path = Path(vm_path) if vm_path else None
        self.stop_grace = stop_grace if stop_grace is not None else settings.stop_grace_seconds

    async def _stop(self, run: DeploymentRun, name: str) -> str | None:
        """Graceful stop, then turn-off. Returns an error message or None."""
        result = await self.provider.stop_vm(name)
        if result.success:
            return None
        run.log(f"  Graceful stop of {name} failed, turning off: {result.error}")
        await asyncio.sleep(self.stop_grace)
        result = await self.provider.stop_vm(name, force=True)
        return None if result.success else f"Failed to stop {name}: {result.error}"

    async def _remove_machine(self, run: DeploymentRun, name: str, vm_root: Path) -> VMRemoval:
        entry = VMRemoval(name=name)
        try:
            exists = await self.provider.vm_exists(name)
        except Exception as e:
            entry.error = f"Failed to query {name}: {e}"
            return entry

        if exists:
            run.log(f"Removing VM: {name}")
            stop_error = await self._stop(run, name)
            if stop_error:
                # Remove-VM fails on a running VM; try anyway and report both
                run.log(f"  WARNING: {stop_error}", is_error=True)
            result = await self.provider.remove_vm(name, delete_disks=True)
            if not result.success:
                entry.error = f"Failed to remove {name}: {result.error}"
                return entry
        else:
            entry.found = False
            run.log(f"VM {name} not found, skipping")

        disk_dir = vm_root / name
        if disk_dir.is_dir():
            run.log(f"Removing disks: {disk_dir}")
            try:
                await asyncio.to_thread(shutil.rmtree, disk_dir)
            except OSError as e:
                entry.error = f"Failed to delete {disk_dir}: {e}"
                return entry

        entry.success = True
        return entry

    async def _remove_switches(self, run: DeploymentRun, result: RemovalResult) -> None:
        topology = run.topology
        for switch in sorted(topology.switch_names()):
            users = self.store.switch_in_use(switch, exclude=topology.name)
            if users:
                run.log(f"Keeping switch {switch}: still used by {', '.join(users)}")
                continue
            try:
                if not await self.provider.switch_exists(switch):
                    continue
                run.log(f"Removing switch: {switch}")
                removed = await self.provider.remove_switch(switch)
            except (HypervisorError, TimeoutError, OSError) as e:
                result.errors.append(f"Failed to remove switch {switch}: {e}")
                continue
            if removed.success:
                result.switches_removed.append(switch)
            else:
                result.errors.append(f"Failed to remove switch {switch}: {removed.error}")

    async def remove(self, run: DeploymentRun) -> RemovalResult:
        """Tear down run.topology. Always finishes the run."""
        topology = run.topology
        result = RemovalResult(lab_name=topology.name)

        try:
            run.progress(0, f"Removing lab '{topology.name}'...")
            run.set_phase(DeployPhase.VALIDATING)
            error = validate_topology(topology)
            if error is not None:
                result.errors.append(str(error))
                self._end(run, RunOutcome.FAILED, f"Invalid configuration for removal: {error}")
                return result

            run.set_phase(DeployPhase.REMOVING)
            vm_root = self._vm_path or Path(self.app_settings.vm_path())
            total = len(topology.machines)

            for index, vm in enumerate(topology.machines):
                if run.cancel_token.is_cancelled:
                    result.cancelled = True
                    break
                run.progress(int(index * 90 / max(total, 1)), f"Removing {vm.name} ({index + 1}/{total})")
                entry = await self._remove_machine(run, vm.name, vm_root)
                result.vms.append(entry)
                if entry.error:
                    run.log(f"  ERROR: {entry.error}", is_error=True)
                    logger.warning(f"Lab {topology.name}: {entry.error}")

            if result.cancelled:
                self._end(run, RunOutcome.CANCELLED, "Removal cancelled; lab definition kept")
                return result

            run.progress(90, "Removing virtual switch...")
            await self._remove_switches(run, result)
            for message in result.errors:
                run.log(f"  ERROR: {message}", is_error=True)

            # Every machine has been attempted; the definition goes regardless of failures
            try:
                result.definition_deleted = self.store.delete(topology)
                if result.definition_deleted:
                    run.log(f"Deleted config file: {topology.path}")
            except OSError as e:
                result.errors.append(f"Could not delete config file: {e}")
                run.log(f"Warning: Could not delete config file: {e}", is_error=True)

            if result.success:
                run.progress(100, "Lab removed!")
                self._end(run, RunOutcome.SUCCESS, "Lab removed")
            else:
                self._end(run, RunOutcome.FAILED, "Removal finished with errors")
            return result

        except asyncio.CancelledError:
            run.finish(RunOutcome.CANCELLED, "Removal task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Removal of lab {topology.name} crashed")
            result.errors.append(str(e))
            message = f"Removal failed: {e}"
            if run.log_file:
                message += f". See log file: {run.log_file}"
            self._end(run, RunOutcome.FAILED, message)
            return result

    @staticmethod
    def _end(run: DeploymentRun, outcome: RunOutcome, message: str) -> None:
        run.log(message, is_error=outcome == RunOutcome.FAILED)
        run.finish(outcome, message)
