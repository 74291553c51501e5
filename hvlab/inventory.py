"""VM dashboard listing.

Combines the hypervisor's view of each VM with what the latest lab
definition says about it (role, planned IP) and with live role detection.
"""

from __future__ import annotations

import asyncio
import logging

from hvlab.providers.base import Provider, VMRecord
from hvlab.roles import NullRoleDetector, RoleDetector, normalize_role
from hvlab.schemas import ObservedVM, VMSpec
from hvlab.store import TopologyStore

logger = logging.getLogger(__name__)


def to_observed(record: VMRecord, spec: VMSpec | None = None) -> ObservedVM:
    """Build an ObservedVM, filling role and IP from the definition."""
    ip = record.ip_address or (spec.ip_address if spec else None)
    return ObservedVM(
        name=record.name,
        state=record.state,
        memory_gb=round(record.memory_mb / 1024) if record.memory_mb else 0,
        processors=record.processors,
        uptime_seconds=record.uptime_seconds,
        ip_address=ip,
        role=normalize_role(spec.role if spec else None),
    )


class InventoryService:
    """Lists VMs for the dashboard."""

    def __init__(
        self,
        provider: Provider,
        store: TopologyStore,
        role_detector: RoleDetector | None = None,
    ):
        self.provider = provider
        self.store = store
        self.role_detector = role_detector or NullRoleDetector()

    async def list_vms(self) -> list[ObservedVM]:
        records = await self.provider.list_vms()
        try:
            lookup = self.store.machine_lookup()
        except OSError as e:
            logger.warning(f"Could not read lab definitions for VM enrichment: {e}")
            lookup = {}

        vms = [to_observed(r, lookup.get(r.name.lower())) for r in records]
        # Probing blocks on sockets; keep it off the event loop
        detected = await asyncio.gather(
            *(asyncio.to_thread(self.role_detector.detect, vm) for vm in vms)
        )
        for vm, role in zip(vms, detected):
            vm.detected_role = role
        return vms
