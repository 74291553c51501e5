"""Desired-vs-observed reconciliation for deployments.

Before anything is provisioned, the topology's machine names are checked
against the VMs that already exist on the host. The overlap decides whether
the run can proceed on its own or needs the operator to pick a strategy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

from hvlab.schemas import DeploymentChoice, Strategy

if TYPE_CHECKING:
    from hvlab.providers.base import Provider
    from hvlab.schemas import LabTopology

logger = logging.getLogger(__name__)


class OverlapState(str, Enum):
    FRESH_DEPLOY = "fresh_deploy"  # No machine exists yet
    PARTIAL_OVERLAP = "partial_overlap"  # Some exist, some are new
    ALL_EXIST = "all_exist"  # Every machine already exists


ALLOWED_CHOICES = {
    OverlapState.FRESH_DEPLOY: [],
    OverlapState.PARTIAL_OVERLAP: [
        DeploymentChoice.UPDATE_EXISTING,
        DeploymentChoice.INCREMENTAL,
        DeploymentChoice.CANCEL,
    ],
    OverlapState.ALL_EXIST: [
        DeploymentChoice.UPDATE_EXISTING,
        DeploymentChoice.REDEPLOY,
        DeploymentChoice.CANCEL,
    ],
}

CHOICE_STRATEGIES = {
    DeploymentChoice.UPDATE_EXISTING: Strategy.UPDATE_EXISTING,
    DeploymentChoice.INCREMENTAL: Strategy.INCREMENTAL,
    DeploymentChoice.REDEPLOY: Strategy.FULL,
}


@dataclass
class Reconciliation:
    """Outcome of comparing a topology with the host's VMs."""
    state: OverlapState
    existing: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def needs_decision(self) -> bool:
        return self.state != OverlapState.FRESH_DEPLOY

    @property
    def choices(self) -> list[DeploymentChoice]:
        return list(ALLOWED_CHOICES[self.state])

    def prompt_message(self) -> str:
        if self.state == OverlapState.ALL_EXIST:
            return (
                f"All VMs already exist: {', '.join(self.existing)}. "
                "Update them in place, redeploy everything from scratch, or cancel."
            )
        return (
            f"Existing VMs found: {', '.join(self.existing)}. "
            f"New VMs to create: {', '.join(self.missing)}. "
            "Update existing VMs and add missing ones, add only missing VMs, or cancel."
        )


# Awaited at the suspend point; returns the operator's choice
DecisionCallback = Callable[[Reconciliation], Awaitable[DeploymentChoice]]


def strategy_for_choice(
    reconciliation: Reconciliation,
    choice: DeploymentChoice | None,
) -> Strategy | None:
    """Map an operator choice onto a strategy; None means cancel.

    Choices outside the set offered for the overlap state count as cancel.
    """
    if not reconciliation.needs_decision:
        return Strategy.FULL
    if choice is None or choice not in reconciliation.choices:
        return None
    return CHOICE_STRATEGIES.get(choice)


def classify_names(names: list[str], existing: set[str]) -> Reconciliation:
    """Classify machine names against the set of existing ones."""
    present = [n for n in names if n in existing]
    missing = [n for n in names if n not in existing]

    if not present:
        state = OverlapState.FRESH_DEPLOY
    elif not missing:
        state = OverlapState.ALL_EXIST
    else:
        state = OverlapState.PARTIAL_OVERLAP
    return Reconciliation(state=state, existing=present, missing=missing)


class StateReconciler:
    """Classifies a topology against live infrastructure and picks a strategy."""

    def __init__(self, provider: Provider, decision_timeout: float | None = None):
        self.provider = provider
        self.decision_timeout = decision_timeout

    async def classify(self, topology: LabTopology) -> Reconciliation:
        """Query which of the topology's machines already exist.

        Uses the provider's batched query, falling back to one query per
        machine if the batched call fails.
        """
        names = [vm.name for vm in topology.machines]
        if not names:
            return Reconciliation(state=OverlapState.FRESH_DEPLOY)

        try:
            existing = await self.provider.existing_vms(names)
        except Exception as e:
            logger.warning(f"Batched VM query failed, probing individually: {e}")
            existing = set()
            for name in names:
                if await self.provider.vm_exists(name):
                    existing.add(name)

        result = classify_names(names, existing)
        logger.info(
            f"Reconciled lab {topology.name}: {result.state.value} "
            f"(existing={result.existing}, missing={result.missing})"
        )
        return result

    async def resolve(
        self,
        reconciliation: Reconciliation,
        decide: DecisionCallback | None,
        incremental: bool = False,
    ) -> Strategy | None:
        """Pick the strategy, suspending for an operator decision if needed.

        An explicit incremental request settles the question without asking.
        Returns None when the run must be cancelled.
        """
        if incremental:
            if reconciliation.state == OverlapState.ALL_EXIST:
                logger.info("All VMs already exist; incremental run will not create any VM")
            return Strategy.INCREMENTAL

        if not reconciliation.needs_decision:
            return Strategy.FULL

        if decide is None:
            logger.warning("Lab overlaps existing VMs and no decision handler is available")
            return None

        try:
            if self.decision_timeout:
                choice = await asyncio.wait_for(decide(reconciliation), self.decision_timeout)
            else:
                choice = await decide(reconciliation)
        except asyncio.TimeoutError:
            logger.warning(f"No deployment decision within {self.decision_timeout}s")
            return None

        return strategy_for_choice(reconciliation, choice)
