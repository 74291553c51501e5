"""Tests for desired-vs-observed reconciliation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from hvlab.reconcile import (
    OverlapState,
    Reconciliation,
    StateReconciler,
    classify_names,
    strategy_for_choice,
)
from hvlab.schemas import DeploymentChoice, Strategy
from hvlab.tests.conftest import FakeProvider


class TestClassifyNames:
    def test_fresh_deploy(self):
        result = classify_names(["DC01", "WS01"], set())

        assert result.state == OverlapState.FRESH_DEPLOY
        assert result.missing == ["DC01", "WS01"]
        assert not result.needs_decision

    def test_partial_overlap(self):
        result = classify_names(["DC01", "WS01"], {"DC01"})

        assert result.state == OverlapState.PARTIAL_OVERLAP
        assert result.existing == ["DC01"]
        assert result.missing == ["WS01"]
        assert DeploymentChoice.INCREMENTAL in result.choices
        assert DeploymentChoice.REDEPLOY not in result.choices

    def test_all_exist(self):
        result = classify_names(["DC01", "WS01"], {"DC01", "WS01"})

        assert result.state == OverlapState.ALL_EXIST
        assert result.choices == [
            DeploymentChoice.UPDATE_EXISTING,
            DeploymentChoice.REDEPLOY,
            DeploymentChoice.CANCEL,
        ]


class TestStrategyForChoice:
    def test_choice_mapping(self):
        partial = Reconciliation(OverlapState.PARTIAL_OVERLAP, ["A"], ["B"])
        all_exist = Reconciliation(OverlapState.ALL_EXIST, ["A", "B"], [])

        assert strategy_for_choice(partial, DeploymentChoice.INCREMENTAL) == Strategy.INCREMENTAL
        assert strategy_for_choice(partial, DeploymentChoice.UPDATE_EXISTING) == Strategy.UPDATE_EXISTING
        assert strategy_for_choice(all_exist, DeploymentChoice.REDEPLOY) == Strategy.FULL

    def test_cancel_and_unoffered_choices(self):
        partial = Reconciliation(OverlapState.PARTIAL_OVERLAP, ["A"], ["B"])

        assert strategy_for_choice(partial, DeploymentChoice.CANCEL) is None
        # Redeploy is only offered when every VM exists
        assert strategy_for_choice(partial, DeploymentChoice.REDEPLOY) is None


class TestStateReconciler:
    @pytest.mark.asyncio
    async def test_classify_is_case_insensitive(self, topology):
        reconciler = StateReconciler(FakeProvider(vms=["dc01"]))

        result = await reconciler.classify(topology)

        assert result.state == OverlapState.PARTIAL_OVERLAP
        assert result.existing == ["DC01"]

    @pytest.mark.asyncio
    async def test_falls_back_to_per_vm_query(self, topology):
        provider = FakeProvider(vms=["DC01", "WS01"])
        provider.existing_vms = AsyncMock(side_effect=RuntimeError("batch failed"))
        provider.vm_exists = AsyncMock(return_value=True)

        result = await StateReconciler(provider).classify(topology)

        assert result.state == OverlapState.ALL_EXIST
        assert provider.vm_exists.await_count == 2

    @pytest.mark.asyncio
    async def test_fresh_deploy_needs_no_decision(self):
        decide = AsyncMock()
        reconciler = StateReconciler(FakeProvider())

        strategy = await reconciler.resolve(Reconciliation(OverlapState.FRESH_DEPLOY), decide)

        assert strategy == Strategy.FULL
        decide.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_incremental_flag_skips_prompt(self):
        decide = AsyncMock()
        reconciler = StateReconciler(FakeProvider())
        partial = Reconciliation(OverlapState.PARTIAL_OVERLAP, ["A"], ["B"])

        strategy = await reconciler.resolve(partial, decide, incremental=True)

        assert strategy == Strategy.INCREMENTAL
        decide.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_operator_decision_used(self):
        reconciler = StateReconciler(FakeProvider())
        partial = Reconciliation(OverlapState.PARTIAL_OVERLAP, ["A"], ["B"])

        strategy = await reconciler.resolve(
            partial, AsyncMock(return_value=DeploymentChoice.UPDATE_EXISTING)
        )

        assert strategy == Strategy.UPDATE_EXISTING

    @pytest.mark.asyncio
    async def test_no_handler_cancels(self):
        partial = Reconciliation(OverlapState.PARTIAL_OVERLAP, ["A"], ["B"])

        assert await StateReconciler(FakeProvider()).resolve(partial, None) is None

    @pytest.mark.asyncio
    async def test_decision_timeout_cancels(self):
        async def never(_):
            await asyncio.sleep(10)

        reconciler = StateReconciler(FakeProvider(), decision_timeout=0.05)
        all_exist = Reconciliation(OverlapState.ALL_EXIST, ["A"], [])

        assert await reconciler.resolve(all_exist, never) is None
