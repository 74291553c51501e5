"""Tests for the Hyper-V provider with PowerShell calls mocked out."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from hvlab.errors import HypervisorError
from hvlab.providers import get_default_provider, register_provider, reset_providers
from hvlab.providers.hyperv import HyperVProvider, parse_json_output, ps_quote
from hvlab.schemas import PowerState
from hvlab.tests.conftest import FakeProvider


def test_ps_quote_escapes_single_quotes():
    assert ps_quote("O'Brien") == "'O''Brien'"


def test_parse_json_output_normalizes_shapes():
    assert parse_json_output("") == []
    assert parse_json_output("null") == []
    assert parse_json_output('{"Name": "DC01"}') == [{"Name": "DC01"}]
    assert parse_json_output('["DC01", "WS01"]') == ["DC01", "WS01"]


@pytest.fixture
def hyperv():
    return HyperVProvider(powershell="pwsh", timeout=5)


class TestHyperVProvider:
    @pytest.mark.asyncio
    async def test_list_vms_parses_records(self, hyperv):
        output = json.dumps([
            {"Name": "DC01", "State": "Running", "MemoryMB": 4096, "Processors": 2,
             "UptimeSeconds": 120, "IPAddress": "10.0.0.10"},
            {"Name": "WS01", "State": "Off", "MemoryMB": 0, "Processors": 2,
             "UptimeSeconds": 0, "IPAddress": None},
        ])
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(0, output, "")):
            vms = await hyperv.list_vms()

        assert vms[0].state == PowerState.RUNNING
        assert vms[0].ip_address == "10.0.0.10"
        assert vms[1].state == PowerState.OFF
        assert vms[1].uptime_seconds == 0

    @pytest.mark.asyncio
    async def test_list_vms_failure_raises(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(1, "", "no module")):
            with pytest.raises(HypervisorError, match="no module"):
                await hyperv.list_vms()

    @pytest.mark.asyncio
    async def test_existing_vms_single_batched_call(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(0, '"dc01"', "")) as mock_ps:
            found = await hyperv.existing_vms(["DC01", "WS01"])

        assert found == {"DC01"}
        mock_ps.assert_awaited_once()
        assert "'DC01','WS01'" in mock_ps.await_args.args[0]

    @pytest.mark.asyncio
    async def test_invalid_names_never_reach_powershell(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock) as mock_ps:
            result = await hyperv.start_vm("x'; Remove-Item C:\\ -Recurse; '")

        assert not result.success
        mock_ps.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_modes(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(0, "", "")) as mock_ps:
            await hyperv.stop_vm("DC01")
            graceful = mock_ps.await_args.args[0]
            await hyperv.stop_vm("DC01", force=True)
            forced = mock_ps.await_args.args[0]

        assert "-TurnOff" not in graceful
        assert "-TurnOff" in forced

    @pytest.mark.asyncio
    async def test_action_failure_reports_stderr(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(1, "", "VM is locked")):
            result = await hyperv.remove_vm("DC01")

        assert not result.success
        assert result.error == "VM is locked"

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_result(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, side_effect=TimeoutError("timed out")):
            result = await hyperv.pause_vm("DC01")

        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_switch_exists(self, hyperv):
        with patch.object(hyperv, "_run_ps", new_callable=AsyncMock, return_value=(0, "EXISTS\r\n", "")):
            assert await hyperv.switch_exists("LabSwitch")
        assert not await hyperv.switch_exists("bad switch")


class TestRegistry:
    def setup_method(self):
        reset_providers()

    def teardown_method(self):
        reset_providers()

    def test_registered_provider_is_default(self):
        fake = FakeProvider()
        register_provider(fake)

        assert get_default_provider() is fake

    def test_hyperv_discovered_when_empty(self):
        assert isinstance(get_default_provider(), HyperVProvider)
