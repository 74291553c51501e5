"""Base provider interface for hypervisor inventory and control."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from hvlab.schemas import PowerState


@dataclass
class VMRecord:
    """A VM as reported by the hypervisor."""
    name: str
    state: PowerState = PowerState.UNKNOWN
    memory_mb: int = 0
    processors: int = 0
    uptime_seconds: float = 0.0
    ip_address: str | None = None


@dataclass
class VMActionResult:
    """Result of a VM or switch management call."""
    success: bool
    target: str
    stdout: str = ""
    stderr: str = ""
    error: str | None = None


class Provider(ABC):
    """Abstract base class for hypervisor providers.

    The orchestrators use this as a capability interface only: list VMs,
    change their state, remove them, and query/remove virtual switches.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'hyperv')."""
        ...

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    @abstractmethod
    async def list_vms(self) -> list[VMRecord]:
        """List every VM on the host."""
        ...

    async def existing_vms(self, names: list[str]) -> set[str]:
        """Return the subset of names for which a VM exists.

        Matching is case-insensitive; returned names use the caller's
        spelling. Providers can override this with a batched query.
        """
        present = {vm.name.lower() for vm in await self.list_vms()}
        return {name for name in names if name.lower() in present}

    async def vm_exists(self, name: str) -> bool:
        return bool(await self.existing_vms([name]))

    @abstractmethod
    async def start_vm(self, name: str) -> VMActionResult:
        ...

    @abstractmethod
    async def stop_vm(self, name: str, force: bool = False) -> VMActionResult:
        """Stop a VM: guest shutdown, or power off when force is set."""
        ...

    @abstractmethod
    async def pause_vm(self, name: str) -> VMActionResult:
        ...

    async def restart_vm(self, name: str, delay: float = 2.0) -> VMActionResult:
        """Stop then start a VM."""
        await self.stop_vm(name)
        await asyncio.sleep(delay)
        return await self.start_vm(name)

    @abstractmethod
    async def remove_vm(self, name: str, delete_disks: bool = True) -> VMActionResult:
        """Remove a VM (which must be off) and optionally its disks."""
        ...

    @abstractmethod
    async def switch_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    async def remove_switch(self, name: str) -> VMActionResult:
        ...
